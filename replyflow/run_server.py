#!/usr/bin/env python
"""
Development server for the entitlement API.

Usage: python -m replyflow.run_server [--port 8000] [--reload]
"""
import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the replyflow API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    print(f"\n[INFO] Starting replyflow API on {args.host}:{args.port}...")
    uvicorn.run("replyflow.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
