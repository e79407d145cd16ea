"""
Serverless entry point for the Helpdesk Triage API
"""
import os

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")

from mangum import Adapter
from helpdesk.main import app

# Lifespan builds the triage components and database engine on cold start
handler = Adapter(app, lifespan="auto")
