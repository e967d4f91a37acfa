"""Scenecast — dev launcher. Serves the API, or analyses one story file."""

import argparse
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


async def analyse_file(path: Path, data_dir: Path, offline: bool) -> dict:
    """Analyse one story file; Ctrl-C cancels and keeps partial results."""
    from scenecast.config import Limits, get_config
    from scenecast.control import RunControl
    from scenecast.llm import llm_from_config
    from scenecast.pipeline import analyse_story

    config = get_config(data_dir)
    llm = None if offline else llm_from_config(config)
    if llm is None:
        logging.getLogger("scenecast").info("No LLM configured; using fallbacks only")

    control = RunControl()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, control.cancel)

    analysis = await analyse_story(
        path.read_text(encoding="utf-8"),
        llm,
        style=config.get("style") or None,
        control=control,
        limits=Limits.from_config(config),
        templates=config.get("prompts"),
    )
    return analysis.wire()


def main():
    parser = argparse.ArgumentParser(description="Scenecast dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--analyse", type=Path, metavar="FILE", default=None,
                        help="Analyse a story file and print the result as JSON")
    parser.add_argument("--offline", action="store_true",
                        help="With --analyse: skip the LLM, use fallbacks only")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    data_dir = args.data_dir or Path(os.getenv("DATA_DIR", str(ROOT / "data")))

    if args.analyse:
        from scenecast.pipeline import InputError
        try:
            result = asyncio.run(analyse_file(args.analyse, data_dir, args.offline))
        except InputError as e:
            logging.getLogger("scenecast").error("%s", e)
            sys.exit(2)
        json.dump(result, sys.stdout, indent=2, ensure_ascii=False)
        print()
        return

    # Build env for the server so it picks up the same data dir
    env = os.environ.copy()
    env["DATA_DIR"] = str(data_dir.resolve())

    procs: list[subprocess.Popen] = []

    def shutdown(*_):
        print("\nShutting down...")
        for p in procs:
            p.terminate()
        for p in procs:
            p.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting API on http://localhost:{PORT} ...")
    procs.append(subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "scenecast.app:create_app", "--factory",
         "--reload", "--host", HOST, "--port", PORT],
        cwd=ROOT, env=env,
    ))

    for p in procs:
        p.wait()


if __name__ == "__main__":
    main()
