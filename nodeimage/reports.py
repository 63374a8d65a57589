import json
import logging
import os
from dataclasses import asdict
from typing import Any, Dict

from .pipeline.runner import PipelineRunResult


class BuildReporter:
    """Writes build run results as JSON reports."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def save_report(self, result: PipelineRunResult, output_dir: str = "./build_reports") -> str:
        """
        Save a build report to a JSON file.

        Args:
            result: Pipeline run result to save
            output_dir: Directory to save reports

        Returns:
            Path to saved report file
        """
        os.makedirs(output_dir, exist_ok=True)

        timestamp = result.started_at.strftime("%Y%m%d_%H%M%S")
        filename = f"build_{timestamp}_{result.run_id}.json"
        filepath = os.path.join(output_dir, filename)

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(self.report_to_dict(result), f, indent=2, default=str)

        self.logger.info("Report saved to %s", filepath)
        return filepath

    def report_to_dict(self, result: PipelineRunResult) -> Dict[str, Any]:
        """Convert a run result to a dictionary for serialization."""
        return {
            "run_id": result.run_id,
            "status": result.status.value,
            "success": result.success,
            "candidate_image": result.candidate_image,
            "published_images": list(result.published_images),
            "git_commit": result.git_commit,
            "category": result.category.value if result.category else None,
            "failed_step": result.failed_step,
            "recipe_digest": result.recipe_digest,
            "dockerfile_path": result.dockerfile_path,
            "batches": result.batches,
            "timings": dict(result.timings),
            "checks": dict(result.checks),
            "version_output": result.version_output,
            "metrics": asdict(result.metrics) if result.metrics else None,
            "issues": [issue.to_dict() for issue in result.issues],
            "started_at": result.started_at.isoformat(),
            "finished_at": result.finished_at.isoformat() if result.finished_at else None,
        }
