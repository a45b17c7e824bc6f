# agent/agent.py
from __future__ import annotations

import signal
import time
from pathlib import Path

from runway.errors import PublishError
from runway.logging import get_logger
from runway.report import HttpStatusPublisher
from runway.settings import Settings
from runway.ui.console import get_console

from .api_client import APIClient, APIError
from .executor import execute_lease
from .models import Lease

logger = get_logger("runway.agent")


class Agent:
    """runway agent that polls for queued runs and executes them."""

    def __init__(self, api_url: str, agent_id: str, poll_interval: int = 5, settings: Settings | None = None):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the API
            agent_id: Unique identifier for this agent instance
            poll_interval: Seconds to wait between polls when no runs are queued
            settings: Cache, workspace and publish settings (default: from the environment)
        """
        self.api_client = APIClient(api_url, agent_id)
        self.poll_interval = poll_interval
        self.settings = settings or Settings.from_env()
        self.running = True

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        console = get_console()
        console.print_info(f"\nReceived signal {signum}, shutting down after the current run...")
        self.running = False

    def run(self) -> None:
        """Run the agent loop."""
        console = get_console()
        console.print_agent_started(
            agent_id=self.api_client.agent_id,
            api=self.api_client.base_url,
            poll_interval=self.poll_interval,
        )

        while self.running:
            try:
                lease = self.api_client.claim_lease()

                if lease:
                    logger.info("claimed run %s (%s)", lease.run_id, lease.ref)
                    console.print_lease_acquired(
                        pipeline=lease.pipeline_name,
                        run_id=lease.run_id,
                    )
                    self._execute_lease(lease)
                else:
                    # Nothing queued, wait before next poll
                    time.sleep(self.poll_interval)

            except APIError as e:
                logger.warning("control plane unavailable: %s", e)
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check API connectivity and retry.",
                )
                # Wait before retrying on API errors
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")

    def _execute_lease(self, lease: Lease) -> None:
        """Execute a single lease."""
        console = get_console()
        start_time = time.time()

        try:
            report = execute_lease(lease, self.api_client, self.settings, cancel_poll_interval=self.poll_interval)
        except Exception as e:
            # the run never started (clone failed, bad pipeline snapshot)
            logger.error("run %s could not start: %s", lease.run_id, e)
            try:
                HttpStatusPublisher(self.api_client.base_url).publish(lease.run_id, "failed", {})
            except PublishError as api_err:
                console.print_error(
                    "Failed to send completion",
                    f"Could not send completion status to API: {api_err}",
                )
            console.print_execution_complete(status="failed", duration=time.time() - start_time)
            console.print_exception(e)
            return

        logger.info("run %s finished: %s", lease.run_id, report.status.value)
        console.print_execution_complete(status=report.status.value, duration=time.time() - start_time)
        # Show results in debug mode
        if console.debug:
            console.print_results(report)


def run_agent(api_url: str, agent_id: str, poll_interval: int = 5, log_file: Path | None = None) -> None:
    """
    Run the runway agent loop.

    Args:
        api_url: Base URL of the API
        agent_id: Unique identifier for this agent instance
        poll_interval: Seconds to wait between polls when no runs are queued
        log_file: Also write runway logs to this rotating file
    """
    if log_file is not None:
        get_logger("runway", log_file)
    agent = Agent(api_url, agent_id, poll_interval)
    agent.run()
