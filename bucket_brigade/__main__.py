"""Module entry point for the bucket browser."""
import argparse
import logging
from pathlib import Path
import sys

from .controller import BrowserController
from .presenter import BrowserPresenter
from .services import S3Service, TransientRemoteError
from .settings import SettingsStorage
from .tui import BucketBrigadeApp
from .ui_utils import describe_remote_error, is_credential_error

LOGGER = logging.getLogger("bucket_brigade")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bucket-brigade",
        description="Browse S3 buckets, apply masks and manage Glacier restores.",
    )
    parser.add_argument("--profile", help="saved connection profile (default: AWS credential chain)")
    parser.add_argument("--bucket", help="open this bucket on start")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="log verbosity (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=str(Path.home() / ".bucket_brigade.log"),
        help="where to write logs; the terminal is reserved for the UI",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        filename=args.log_file,
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings_storage = SettingsStorage()
    settings = settings_storage.load()
    controller = BrowserController(service=S3Service(timeout=settings.fetch_timeout_seconds))
    profile = args.profile or settings.last_connection or None
    try:
        buckets = controller.connect(profile)
    except TransientRemoteError as exc:
        LOGGER.exception("Startup connection failed")
        if is_credential_error(exc):
            print(f"AWS credentials error: {describe_remote_error(exc)}", file=sys.stderr)
            print("Configure credentials (aws configure, AWS_PROFILE, or a saved profile) and retry.", file=sys.stderr)
        else:
            print(f"Failed to load buckets: {describe_remote_error(exc)}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    presenter = BrowserPresenter(controller=controller, settings_storage=settings_storage)
    if profile:
        presenter.update_last_connection(profile)
    if args.bucket:
        presenter.update_last_bucket(args.bucket)
    BucketBrigadeApp(presenter, buckets).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
