# marketplace_workflow/app.py

from datetime import datetime, timezone

from waitress import serve

from config import ENV, API_HOST, API_PORT
from db import init_state_db
from logger import get_logger
from scheduler import WorkerRuntime
from server import create_app

log = get_logger("app")


def main():
    log.info(f"===== SERVER START: {datetime.now(timezone.utc).isoformat()} (ENV={ENV}) =====")
    init_state_db()

    runtime = WorkerRuntime()
    runtime.start()
    try:
        serve(create_app(runtime), host=API_HOST, port=API_PORT)
    finally:
        runtime.shutdown()
        log.info(f"===== SERVER EXIT: {datetime.now(timezone.utc).isoformat()} =====")


if __name__ == "__main__":
    main()
