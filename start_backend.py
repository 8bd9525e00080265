"""
Backend Launcher - FastAPI Server
==================================
Starts the FastAPI backend server for literature review screening
"""

import uvicorn
from pathlib import Path

from shared.config import get_settings


def main():
    """Launch FastAPI backend server"""
    settings = get_settings()
    base_url = f"http://localhost:{settings.backend_port}"

    print("🚀 Starting Literature Review Screening - FastAPI Backend")
    print("=" * 60)
    print(f"📡 API will be available at: {base_url}")
    print(f"📚 API docs will be available at: {base_url}/docs")
    print("=" * 60)

    project_root = Path(__file__).parent

    uvicorn.run(
        "backend.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=True,  # Development only
        reload_dirs=[str(project_root / "backend"), str(project_root / "shared")],
        log_level="info"
    )


if __name__ == "__main__":
    main()
