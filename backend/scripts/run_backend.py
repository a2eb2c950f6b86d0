#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

import uvicorn


def _set_env(name: str, value: str | None) -> None:
    if value is None:
        return
    clean = str(value).strip()
    if clean:
        os.environ[name] = clean


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the repository chat backend.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--app", default="repochat.main:app")

    parser.add_argument("--llm-base-url", default=None)
    parser.add_argument("--llm-model", default=None)
    parser.add_argument("--llm-edit-model", default=None)
    parser.add_argument("--github-api-base", default=None)
    parser.add_argument("--web-origin", default=None)
    parser.add_argument("--log-level", default=None)

    args = parser.parse_args()

    # Settings are read at import time, so the environment must be in place before uvicorn loads the app.
    _set_env("LLM_BASE_URL", args.llm_base_url)
    _set_env("LLM_MODEL", args.llm_model)
    _set_env("LLM_EDIT_MODEL", args.llm_edit_model)
    _set_env("GITHUB_API_BASE", args.github_api_base)
    _set_env("WEB_ORIGIN", args.web_origin)
    _set_env("LOG_LEVEL", args.log_level)

    uvicorn.run(args.app, host=args.host, port=int(args.port), reload=bool(args.reload))


if __name__ == "__main__":
    main()
