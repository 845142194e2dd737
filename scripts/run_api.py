#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the knowledge-base chat gateway.")
    parser.add_argument("--host", default=os.getenv("KBCHAT_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("KBCHAT_PORT", "8080")))
    parser.add_argument("--log-level", default=os.getenv("KBCHAT_LOG_LEVEL", "info"))
    args = parser.parse_args()

    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    import uvicorn

    uvicorn.run("kbchat.main:app", host=args.host, port=args.port, log_level=str(args.log_level).lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
