import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from scenecast.config import get_config
from scenecast.llm import llm_from_config
from scenecast.storage import Storage

from .routes import router

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None) -> FastAPI:
    """App factory; served with `uvicorn --factory scenecast.app:create_app`."""
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))

    app = FastAPI(title="Scenecast")
    app.state.storage = Storage(resolved)
    app.state.config = get_config(resolved)
    app.state.llm = llm_from_config(app.state.config)
    app.include_router(router, prefix="/api")
    return app
