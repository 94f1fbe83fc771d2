"""
Usage Billing Rail - Serverless Entry Point

Exposes the FastAPI app to serverless runtimes through Mangum.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from usage_billing.api.server import app  # noqa: E402

handler = Mangum(app, lifespan="auto")
