#!/usr/bin/env python3
"""
Backend startup wrapper for the StoryTime API.

Usage:
    python -m storytime.start_backend [--port 8000] [--reload]
"""
import argparse
import os
import sys

import uvicorn


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the StoryTime backend")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args(argv)

    print("[Backend] Starting StoryTime Backend")
    print(f"[Backend] Server: http://localhost:{args.port}")
    print("[Backend] Press CTRL+C to stop")

    try:
        uvicorn.run(
            "storytime.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
