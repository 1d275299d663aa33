"""
Navigation Report Module

Handles creation and saving of navigation run reports in JSON format: one
step per executed action, run totals and the per-model cost breakdown.
"""
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from cost_ledger import CostLedger
from navigation_types import ActionRecord, NavigationResult


class NavigationReport:
    """Manages the report of one navigate() call."""

    def __init__(self, goal: str, reports_dir: str = "reports"):
        """Initialize a new navigation report.

        Args:
            goal: The natural-language goal being navigated to
            reports_dir: Directory to save reports (default: reports)
        """
        self.reports_dir = Path(reports_dir)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

        self.report: Dict[str, Any] = {
            "goal": goal,
            "start_time": datetime.now().isoformat(),
            "end_time": None,
            "steps": [],
            "total_steps": 0,
            "successful_steps": 0,
            "failed_steps": 0,
            "status": "in_progress",
        }

        self.step_counter = 0
        self.session_report_filename: Optional[Path] = None

    def add_step(self, record: ActionRecord) -> None:
        """Add one executed action to the report."""
        self.step_counter += 1
        self.report["steps"].append({
            "step": self.step_counter,
            "timestamp": datetime.fromtimestamp(record.timestamp).isoformat(),
            "action": record.action,
            "arguments": record.params,
            "reasoning": record.reasoning,
            "success": record.success,
            "status": "PASS" if record.success else "FAIL",
        })
        if record.success:
            self.report["successful_steps"] += 1
        else:
            self.report["failed_steps"] += 1
        self.report["total_steps"] = self.step_counter

    def save(self) -> Path:
        """Save the report to a JSON file.

        Returns:
            Path to the saved report file
        """
        if self.session_report_filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.session_report_filename = self.reports_dir / f"navigation_report_{timestamp}.json"

        # Same file is rewritten for the whole session
        with open(self.session_report_filename, 'w', encoding='utf-8') as f:
            json.dump(self.report, f, indent=2, ensure_ascii=False)

        return self.session_report_filename

    def finalize(self, result: NavigationResult, ledger: Optional[CostLedger] = None) -> Path:
        """Record the run outcome and save the report.

        Steps from ``result.action_history`` that were not added yet are
        appended first, so a report can be built from the result alone.
        """
        for record in result.action_history[self.step_counter:]:
            self.add_step(record)

        self.report["end_time"] = datetime.now().isoformat()
        self.report["status"] = "completed" if result.success else "failed"
        self.report["actions_executed"] = result.actions_executed
        self.report["total_tokens"] = result.total_tokens
        self.report["estimated_cost"] = result.estimated_cost
        if ledger is not None:
            self.report["formatted_cost"] = ledger.formatted_cost()
            self.report["cost_breakdown"] = ledger.summary().to_dict()["breakdown"]
        if result.error:
            self.report["error"] = result.error

        return self.save()

    def get_summary(self) -> str:
        """Get a summary string of the report."""
        return (f"{self.report['total_steps']} steps | {self.report['successful_steps']} successful | "
                f"{self.report['failed_steps']} failed | status: {self.report['status']}")

    def get_step_summary(self) -> str:
        lines = []
        for step in self.report.get('steps', []):
            status = step.get('status', 'UNKNOWN')
            status_icon = '[OK]' if status == 'PASS' else '[FAIL]'
            lines.append(f"  {status_icon} Step {step.get('step', 0)}: {step.get('action', 'Unknown')} ({status})")
        return '\n'.join(lines) if lines else "No steps recorded."


def save_navigation_report(goal: str,
                           result: NavigationResult,
                           ledger: Optional[CostLedger] = None,
                           reports_dir: str = "reports") -> Path:
    """Write a complete report for a finished run in one call."""
    report = NavigationReport(goal, reports_dir)
    return report.finalize(result, ledger)
