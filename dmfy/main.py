# /dmfy/main.py

import os
import time
import asyncio
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dmfy.config.settings import settings
from dmfy.utils.lifecycle import lifespan
from dmfy.utils.metrics import response_time_histogram
from dmfy.utils.rate_limiter import limiter
from dmfy.routes import public, webhooks, flows

app = FastAPI(
    title="DMFY Webhook",
    version="1.0.0",
    description="Messenger/Instagram webhook with a publishable conversation flow engine",
    lifespan=lifespan,
    openapi_url="/openapi.json" if settings.environment != "production" else None,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response

@app.middleware("http")
async def timeout_middleware(request: Request, call_next):
    try:
        return await asyncio.wait_for(call_next(request), timeout=30.0)
    except asyncio.TimeoutError:
        return JSONResponse({"detail": "Request timed out"}, status_code=504)

# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router)
app.include_router(flows.router)

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", str(settings.port)))
    host = os.getenv("HOST", "0.0.0.0")

    uvicorn.run(
        "dmfy.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
    )
