import argparse
import logging

from starterkit.core.logging_utils import configure_logging
from starterkit.core.settings import settings
from starterkit.jobs.config import load_metrics_retention_config
from starterkit.jobs.export_cleanup import run_export_cleanup
from starterkit.jobs.retention import run_metrics_retention
from starterkit.services.s3_storage import S3StorageService
from db import SessionLocal


def main():
    parser = argparse.ArgumentParser(description="Run one metrics-retention and/or export-cleanup pass.")
    parser.add_argument("--retention", action="store_true", help="Purge metrics history past retention")
    parser.add_argument("--exports", action="store_true", help="Delete expired data-export archives")
    args = parser.parse_args()
    run_all = not (args.retention or args.exports)

    configure_logging(settings)
    log = logging.getLogger("scripts.run_sweeps")

    if args.retention or run_all:
        deleted = run_metrics_retention(SessionLocal, load_metrics_retention_config())
        print(f"Metrics retention: {deleted}")

    if args.exports or run_all:
        result = run_export_cleanup(SessionLocal, S3StorageService.from_settings(settings))
        print(f"Export cleanup: cleaned={result.cleaned} errors={result.errors} total={result.total}")
        if result.errors:
            log.warning("export cleanup finished with errors")


if __name__ == "__main__":
    main()
