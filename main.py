"""Wind Tavern dev launcher. Starts the API server with uvicorn."""

import argparse
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")


def main():
    parser = argparse.ArgumentParser(description="Wind Tavern dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Clean the data directory and create demo data")
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when source files change")
    args = parser.parse_args()

    from wind_tavern.config import load_settings, setup_logging

    # The app factory reads DATA_DIR, so the data dir must be in the environment.
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())
    settings = load_settings()
    setup_logging(settings.log_level)

    if args.demo:
        from wind_tavern.demo import create_demo_data
        from wind_tavern.storage import Storage
        chat = create_demo_data(Storage(settings.data_dir))
        print(f"Demo data created in {settings.data_dir} (chat {chat.id})")

    print(f"Starting backend on http://localhost:{settings.port} ...")
    uvicorn.run(
        "wind_tavern.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
