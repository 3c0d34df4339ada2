"""Main FastAPI application for the workflow engine.

Run with ``uvicorn bizflow.main:app``; settings come from BIZFLOW_* environment
variables or a ``.env`` file.
"""

from bizflow.config import load_config
from bizflow.factory import create_app

app = create_app(load_config())


if __name__ == "__main__":
    import uvicorn
    config = load_config()
    uvicorn.run(app, **config.get_uvicorn_config())
