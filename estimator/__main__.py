import argparse
import json
import sys

from estimator.errors import ConfigurationError
from estimator.pipeline import Worker
from estimator.settings import configure_logging, get_settings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="estimator-worker",
        description="Claim and process at most one queued inspection estimate job.",
    )
    parser.add_argument("--health", action="store_true", help="check the job store and active config, then exit")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    try:
        worker = Worker.from_settings(settings)
    except ConfigurationError as e:
        print(json.dumps({"ok": False, "error": f"Configuration error: {e}"}))
        return 2

    try:
        payload = worker.health() if args.health else worker.process_next_job().to_dict()
    except ConfigurationError as e:
        print(json.dumps({"ok": False, "error": f"Configuration error: {e}"}))
        return 2
    finally:
        worker.ingestor.close()

    print(json.dumps(payload, default=str))
    return 0 if payload.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
