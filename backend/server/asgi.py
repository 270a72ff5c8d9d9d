"""
ASGI entry point.

Used by uvicorn: `uvicorn server.asgi:app`. Environment comes from the
process, optionally seeded by a .env file in the working directory.
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()
