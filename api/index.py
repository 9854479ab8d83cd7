"""
Vercel Serverless Function wrapper for the dependents finder API
"""
import sys
from pathlib import Path

# Add backend to Python path
backend_path = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from depfinder.main import app  # noqa: E402

# Vercel's @vercel/python builder expects a handler function;
# Mangum converts the ASGI app to the Lambda event format
from mangum import Mangum  # noqa: E402

mangum_handler = Mangum(app, lifespan="off")


def handler(event, context=None):
    """Vercel serverless function handler"""
    return mangum_handler(event, context)
