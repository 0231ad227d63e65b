import logging

from subsync.core.app_factory import build_container
from subsync.core.config import Settings
from subsync.core.logging import configure_logging

logger = logging.getLogger("subsync.scripts.run_trial_sweep")


def main() -> int:
    configure_logging()
    settings = Settings()
    container = build_container(settings)
    try:
        summary = container.trial_expiry_enforcer.sweep()
    finally:
        container.persistence.close()

    print(
        f"Trials scanned: {summary.scanned}, expired: {summary.expired}, "
        f"skipped: {summary.skipped}, failures: {summary.failures}"
    )
    return 1 if summary.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
