import argparse
import os

import uvicorn

from showjudge.config import CONFIG_ENV


def main():
    parser = argparse.ArgumentParser(description="Run the show judging server.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--config", help="Path to the JSON config (default: $SHOWJUDGE_CONFIG or config.json)")
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    if args.config:
        os.environ[CONFIG_ENV] = args.config
    uvicorn.run("showjudge.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
