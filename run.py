import os
import uvicorn

if __name__ == "__main__":
    # Auto-reload only outside production
    reload = os.getenv("ENVIRONMENT", "development") != "production"

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", 8000)),
        reload=reload,
        timeout_graceful_shutdown=30,
    )
