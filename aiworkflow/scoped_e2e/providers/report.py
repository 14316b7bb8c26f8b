"""Write finished runs to disk as JSON reports."""

import logging
from pathlib import Path

from aiworkflow.scoped_e2e.models.test_result import E2ETestResult
from aiworkflow.scoped_e2e.providers.base import ResultConsumer

logger = logging.getLogger(__name__)


class JsonReportWriter(ResultConsumer):
    """Stores each run as ``<output_dir>/e2e-<run id>.json``.

    Screenshots are excluded from the report; failed-step screenshots are
    written beside it as ``e2e-<run id>-bug-<n>.png`` when ``screenshots``
    is enabled.
    """

    def __init__(self, output_dir: Path, screenshots: bool = False) -> None:
        """Initialize writer with the report directory."""
        self.output_dir = output_dir
        self.screenshots = screenshots

    async def consume(self, result: E2ETestResult) -> None:
        """Write the report for ``result``."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.output_dir / f"e2e-{result.test_run_id}.json"
        report_path.write_text(result.model_dump_json(indent=2))
        logger.info(f"[{result.test_run_id}] Report written to {report_path}")

        if not self.screenshots:
            return

        for index, bug in enumerate(result.bugs_found, start=1):
            if not bug.screenshot_data:
                continue
            image_path = self.output_dir / f"e2e-{result.test_run_id}-bug-{index}.png"
            image_path.write_bytes(bug.screenshot_data)
            logger.debug(f"Bug screenshot written to {image_path}")
