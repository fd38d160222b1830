"""
Run the bus ticket API with uvicorn.

  python -m apps.bus [--host 0.0.0.0] [--port 5000] [--reload]

Defaults come from BUS_HOST, BUS_PORT and BUS_RELOAD.
"""
import argparse
import os

import uvicorn


def main(argv=None) -> None:
    ap = argparse.ArgumentParser(prog="python -m apps.bus", description="Bus ticket reservation API")
    ap.add_argument("--host", default=os.getenv("BUS_HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.getenv("BUS_PORT", "5000")))
    ap.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("BUS_RELOAD", "false").lower() in ("1", "true", "yes"),
        help="restart on code changes (development only)",
    )
    args = ap.parse_args(argv)
    uvicorn.run(
        "apps.bus.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        reload_dirs=["apps", "libs"] if args.reload else None,
    )


if __name__ == "__main__":
    main()
