"""FastAPI application - serves the tempo analysis API."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tempotap.api.upload import router as upload_router
from tempotap.api.websocket import router as ws_router

app = FastAPI(title="Tempotap", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(upload_router, prefix="/api")
app.include_router(ws_router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok"}


def run():
    import uvicorn
    from tempotap.config import settings
    uvicorn.run(
        "tempotap.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
