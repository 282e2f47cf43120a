# agent/agent.py
from __future__ import annotations

import signal
import time
from pathlib import Path

from .api_client import APIClient, APIError
from .executor import execute_lease
from .models import Lease
from lintci.ui.console import get_console


class Agent:
    """lintci agent that polls for jobs and executes them."""

    def __init__(
        self,
        api_url: str,
        agent_id: str,
        poll_interval: int = 5,
        *,
        work_dir: Path = Path(".lintci/agent_work"),
        cache_root: Path = Path(".lintci/cache"),
        install_signal_handlers: bool = True,
    ):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the API
            agent_id: Unique identifier for this agent instance
            poll_interval: Seconds to wait between polls when no jobs available
        """
        self.api_client = APIClient(api_url, agent_id)
        self.poll_interval = poll_interval
        self.work_dir = work_dir
        self.cache_root = cache_root
        self.running = True

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        get_console().print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        self.running = False

    def poll_once(self) -> bool:
        """Claim and execute at most one lease. Returns True if a job ran."""
        lease = self.api_client.claim_lease()
        if lease is None:
            return False
        get_console().print_lease_acquired(job_name=lease.job_name, run_id=lease.run_id)
        self._execute_lease(lease)
        return True

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
                if not self.poll_once():
                    time.sleep(self.poll_interval)
            except APIError as e:
                console.print_error("API error", str(e), suggestion="Check API connectivity and retry.")
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")

    def _execute_lease(self, lease: Lease) -> None:
        """Execute a single lease and report completion."""
        console = get_console()
        start_time = time.time()

        result = execute_lease(lease, self.api_client, self.work_dir, self.cache_root)
        try:
            self.api_client.complete_lease(lease.job_id, result.status, result.to_dict())
        except APIError as e:
            console.print_error(
                "Failed to send completion",
                f"Could not send completion status to API: {e}",
            )

        console.print_execution_complete(status=result.status, duration=time.time() - start_time)
        if console.debug and result.logs:
            console.print_info(f"\nLogs for {lease.job_name}:")
            console.print_info("=" * 60)
            console.print_info(result.logs)
            console.print_info("=" * 60)


def run_agent(api_url: str, agent_id: str, poll_interval: int = 5) -> None:
    """
    Run the lintci agent loop.

    Args:
        api_url: Base URL of the API
        agent_id: Unique identifier for this agent instance
        poll_interval: Seconds to wait between polls when no jobs available
    """
    Agent(api_url, agent_id, poll_interval).run()
