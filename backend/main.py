from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from contextlib import asynccontextmanager
import uvicorn
import hmac
import logging
import socket as socketlib

import config
config.setup_logging()

from question_bank import QuestionProvider, load_questions, parse_catalog
from game_state import GameSession
from socket_manager import GameRoom, socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Rival Trivia backend")
    socket_manager.room = GameRoom(GameSession(QuestionProvider(load_questions())))
    yield
    socket_manager.room.cancel_tasks()
    logger.info("Shutting down Rival Trivia backend")


app = FastAPI(title="Rival Trivia Backend", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


@app.get("/system/info")
async def get_system_info():
    return {"ip": get_local_ip(), "port": config.PORT}


@app.get("/game/state")
async def get_game_state():
    """Read-only view of the current game, as players see it."""
    return socket_manager.room.session.snapshot()


def _check_moderator_token(token: str):
    expected = socket_manager.moderator_token
    if expected and not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="Invalid moderator token")


@app.get("/questions/export")
async def export_questions(token: str = ""):
    """Export the active catalog (answers included) in the import format."""
    _check_moderator_token(token)
    catalog = socket_manager.room.session.provider.catalog
    return {"questions": [
        {"category": q.category, "question": q.text, "answer": q.answer} for q in catalog
    ]}


class QuestionImportRequest(BaseModel):
    questions: list
    token: str = ""

    @field_validator('questions')
    @classmethod
    def validate_questions(cls, v: list) -> list:
        if len(v) == 0:
            raise ValueError("At least 1 question is required")
        if len(v) > config.MAX_IMPORT_QUESTIONS:
            raise ValueError(f"At most {config.MAX_IMPORT_QUESTIONS} questions per import")
        return v


@app.post("/questions/import")
async def import_questions(request: QuestionImportRequest):
    """Replace the question catalog from the lobby."""
    _check_moderator_token(request.token)
    try:
        catalog = parse_catalog(request.questions)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    room = socket_manager.room
    async with room.lock:
        if not room.session.replace_questions(catalog):
            raise HTTPException(status_code=409, detail="Questions can only be replaced before the game starts")
    return {"count": len(catalog), "categories": sorted({q.category for q in catalog})}


@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str,
                             moderator: bool = False, token: str = ""):
    await socket_manager.connect(websocket, client_id, is_moderator=moderator, token=token)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        f"http://{local_ip}:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Rival Trivia API is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
