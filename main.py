from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from services.config import configure_logging, load_settings

app = FastAPI(title="Node Sentiment Analyzer")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5174",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers
from api.sentiment import router as sentiment_router

app.include_router(sentiment_router)


@app.on_event("startup")
def on_startup() -> None:
    configure_logging(load_settings().log_level)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
