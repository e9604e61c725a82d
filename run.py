"""
Application Entry Point
"""
import uvicorn

from auction_house.core.config import get_settings

settings = get_settings()

if __name__ == "__main__":
    print("=" * 70)
    print(f"🎯 {settings.APP_NAME} v{settings.APP_VERSION}")
    print("=" * 70)
    print(f"   Store: {settings.STORE_BACKEND}")
    print(f"   Redis Pub/Sub: {'on' if settings.REDIS_ENABLED else 'off'}")
    print(f"   Expiry sweep: every {settings.SWEEP_INTERVAL_SECONDS}s" if settings.SWEEP_ENABLED else "   Expiry sweep: off")
    print(f"\n🌐 http://{settings.HOST}:{settings.PORT}/docs")
    print("=" * 70)

    uvicorn.run(
        "auction_house.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
