"""ASGI entry point: uvicorn lectio.api.app:app"""

from .factory import create_app

app = create_app()
