from fastapi.middleware.cors import CORSMiddleware
from fastapi import FastAPI

from .config import Settings


def setup_cors(app: FastAPI, settings: Settings):
    origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
