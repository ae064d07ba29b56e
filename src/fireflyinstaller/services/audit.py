"""Run report collecting executed steps and reconciliation mutations."""

import json
import os
import tempfile
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fireflyinstaller.models import Mutation


class AuditTrail:
    """Collects execution metadata and writes the run report JSON."""

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self.mutations: List[Mutation] = []
        self.report: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "metadata": {},
            "steps": [],
            "mutations": [],
            "outcomes": {},
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.report["run_id"] = run_id
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.report["metadata"] = metadata
        self.write()

    def step_started(self, step_name: str):
        self.report["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "error": None,
            }
        )

    def step_finished(self, step_name: str, status: str, error: Optional[str] = None):
        for step in reversed(self.report["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                step["status"] = status
                step["finished_at"] = self._now()
                step["error"] = error
                break
        self.write()

    def record_mutation(self, kind: str, identity: str, action: str, detail: str = "") -> Mutation:
        mutation = Mutation(kind=kind, identity=identity, action=action, detail=detail)
        self.mutations.append(mutation)
        self.report["mutations"].append(asdict(mutation))
        self.logger.info("AUDIT %s %s %s %s", action, kind, identity, detail)
        return mutation

    def set_outcome(self, app: str, state: str, version: Optional[str]):
        self.report["outcomes"][app] = {"state": state, "version": version}

    def finalize(self, status: str, error: Optional[str] = None):
        self.report["status"] = status
        self.report["finished_at"] = self._now()
        self.report["error"] = error
        self.write()

    def write(self):
        if not self.report_file:
            return
        directory = os.path.dirname(self.report_file) or "."
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            self.logger.warning("Could not create report directory '%s': %s", directory, exc)
            return

        fd, temp_path = tempfile.mkstemp(prefix="run-report-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write run report '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
