"""Run the contractor data loader API under uvicorn.

    python main.py --port 8080
"""
import argparse

import uvicorn

from be.config import settings


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=f"Serve the {settings.app_name} API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", default=settings.debug, help="Reload on code changes")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    database = settings.db.url.split("@")[-1]

    print(f"{settings.app_name} v{settings.version} ({settings.environment.value})")
    print(f"Database: {database}")
    print(f"Staging directory: {settings.etl.data_dir}")
    print(f"Cache: {settings.cache.max_size} entries, TTL {settings.cache.default_ttl:.0f}s")
    print("-" * 50)

    uvicorn.run(
        "be.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        reload_dirs=["be"] if args.reload else None,
        log_level=settings.logging.level.lower(),
    )
