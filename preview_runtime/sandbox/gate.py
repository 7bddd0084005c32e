"""
Precondition Gate - Refuse to preview anything upstream has not certified.

A gate is any callable ``gate(request_id) -> GateResult`` that raises
PreconditionValidationError listing every violation it found.
"""

import json
import os
from typing import Callable, Dict, Mapping, Optional, Union

from preview_runtime.errors import PreconditionValidationError
from preview_runtime.schemas import AssemblyRecord, GateResult

PreconditionGate = Callable[[str], GateResult]

COMPLETE_VERDICT = "COMPLETE"


def load_assembly_records(path) -> Dict[str, AssemblyRecord]:
    """
    Load upstream assembly records from a JSON file.

    The file holds either a list of records or an object keyed by request id.
    Relative workspace paths are resolved against the file's directory.

    Returns:
        Records keyed by request id
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = [dict(item, request_id=key) for key, item in data.items()]

    base = os.path.dirname(os.path.abspath(path))
    records = {}
    for item in data:
        record = AssemblyRecord.model_validate(item)
        if not os.path.isabs(record.workspace_path):
            record.workspace_path = os.path.join(base, record.workspace_path)
        records[record.request_id] = record
    return records


class AssemblyRecordGate:
    """
    Gate over upstream assembly records.

    Checks, collecting every violation before raising:
    1. The request is known upstream
    2. The completion verdict is COMPLETE
    3. An assembly manifest exists and is hash-locked
    4. The workspace directory exists
    5. No upstream build currently holds the pipeline lock
    """

    def __init__(
        self,
        records: Union[Mapping[str, AssemblyRecord], Callable[[str], Optional[AssemblyRecord]]],
    ):
        if callable(records):
            self._lookup = records
        else:
            self._lookup = records.get

    def __call__(self, request_id: str) -> GateResult:
        record = self._lookup(request_id)
        if record is None:
            raise PreconditionValidationError([f"Assembly request not found: {request_id}"])

        errors = []

        if record.verdict is None:
            errors.append("No completion verdict found")
        elif record.verdict != COMPLETE_VERDICT:
            errors.append(f"Completion verdict is {record.verdict} (expected: {COMPLETE_VERDICT})")

        if not record.manifest_present:
            errors.append("Assembly manifest not found")
        elif not record.manifest_hash:
            errors.append("Assembly manifest is not hash-locked")

        if not os.path.isdir(record.workspace_path):
            errors.append(f"Workspace directory does not exist: {record.workspace_path}")

        if record.build_locked:
            errors.append("Upstream build is in progress (pipeline locked)")

        if errors:
            raise PreconditionValidationError(errors)

        return GateResult(
            request_id=record.request_id,
            verdict=record.verdict,
            manifest_hash=record.manifest_hash,
            framework=record.framework,
            framework_version=record.framework_version,
            workspace_path=record.workspace_path,
        )
