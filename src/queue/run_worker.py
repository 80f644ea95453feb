"""Run the SES feedback worker bound to the configured queue."""
from __future__ import annotations

from src.queue.worker import run_worker


def run() -> None:
    """Console entry point."""

    run_worker()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run()
