from fastapi import FastAPI, Request
import uvicorn

from app.core.config import PROJECT_NAME, ENVIRONMENT, LOG_LEVEL, PORT
from app.core.log_sanitizer import configure_logging
from app.routers import twofa_router

configure_logging(LOG_LEVEL)

app = FastAPI(title=PROJECT_NAME, description="TOTP two-factor authentication service")


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"  # Prevents MIME sniffing attacks
    response.headers["X-Frame-Options"] = "DENY"  # Prevents clickjacking by blocking iframe embedding
    response.headers["Cache-Control"] = "no-store"  # Provisioning URIs and backup codes must not be cached
    return response

# Include routers
app.include_router(twofa_router.router, prefix="/api/2fa", tags=["Two-Factor"])


@app.get("/")
async def root():
    return {"message": f"{PROJECT_NAME} is running."}

if __name__ == "__main__":
    uvicorn_config = {
        "app": "app.main:app",
        "host": "0.0.0.0",
        "port": PORT,
        "reload": ENVIRONMENT == "development",
    }
    uvicorn.run(**uvicorn_config)
