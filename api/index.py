"""
Vercel Serverless Entry Point for the HubSpot -> QuickBooks bridge.
Cron schedules call the /api/cron/* routes; APScheduler is not started here.
"""

import sys
import os

# Add the parent directory to the path so we can import from the main app
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mangum import Mangum

from app import create_app

app = create_app(enable_scheduler=False)

# Lifespan is off, so the orchestrator is built on first request instead
handler = Mangum(app, lifespan="off")
