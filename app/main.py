"""Entry point for the workflow engine service."""

import uvicorn

from app.config import load_config
from app.factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    uvicorn.run(app, **config.get_uvicorn_config())
