"""
SWARM FastAPI Service - Startup Script

Loads environment variables from .env and starts uvicorn server.

Usage:
    python scripts/run_api.py
"""

import os
from pathlib import Path

# Load .env file
from dotenv import load_dotenv

repo_root = Path(__file__).resolve().parents[1]
env_path = repo_root / ".env"
load_dotenv(env_path)

provisioner = os.getenv("SWARM_PROVISIONER", "fly").strip().lower()
if provisioner == "fly" and not os.getenv("FLY_API_TOKEN") and not os.getenv("SWARM_FLY_API_TOKEN"):
    print("WARNING: FLY_API_TOKEN not set in .env (use SWARM_PROVISIONER=memory for local runs)")

# Start uvicorn
if __name__ == "__main__":
    import uvicorn

    print("\nStarting SWARM control plane...")
    uvicorn.run(
        "swarm.api.main:app",
        host=os.getenv("SWARM_HTTP_HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        # A reloader would run a second reaper.
        reload=False,
        log_level="info",
    )
