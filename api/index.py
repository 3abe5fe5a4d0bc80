"""
QUOTA RAIL - Vercel Serverless Entry Point

Wraps the FastAPI application for AWS Lambda-style runtimes.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from quota_rail.api.server import app

# Vercel handler
handler = Mangum(app, lifespan="auto")
