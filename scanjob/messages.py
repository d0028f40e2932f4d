"""
Task request and response messages

Requests arrive as ``{"runID": 42, "params": {...}}``. Responses go out as
``{"runID": 42, "status": "...", "result": "<base64>", "failureMessage": "..."}``;
``result`` is base64 because the scheduler decodes it as a byte slice.
"""

import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from .errors import InvalidJobMessage


class TaskRunStatus(str, Enum):
    RECEIVED = 'received'
    IN_PROGRESS = 'in-progress'
    FINISHED = 'finished'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (TaskRunStatus.FINISHED, TaskRunStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    TaskRunStatus.RECEIVED: {TaskRunStatus.IN_PROGRESS, TaskRunStatus.FAILED},
    TaskRunStatus.IN_PROGRESS: {TaskRunStatus.FINISHED, TaskRunStatus.FAILED},
    TaskRunStatus.FINISHED: set(),
    TaskRunStatus.FAILED: set(),
}


def in_progress_msg_id(run_id: int) -> str:
    return f"task-run-inprogress-{run_id}"


def result_msg_id(run_id: int) -> str:
    return f"task-run-result-{run_id}"


@dataclass
class TaskRequest:
    """A scan job: run identifier plus string parameters"""
    run_id: int
    params: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: bytes) -> 'TaskRequest':
        """
        Decode a job message

        Args:
            data: Message payload

        Returns:
            TaskRequest

        Raises:
            InvalidJobMessage: If the payload is not a valid job
        """
        try:
            document = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidJobMessage(f"failed to unmarshal task request: {e}") from e
        if not isinstance(document, dict):
            raise InvalidJobMessage('task request is not a JSON object')

        run_id = document.get('runID')
        if not isinstance(run_id, int) or isinstance(run_id, bool):
            raise InvalidJobMessage(f"task request has an invalid runID: {run_id!r}")

        params = document.get('params') or {}
        if not isinstance(params, dict):
            raise InvalidJobMessage('task request params is not an object')
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in params.items()):
            raise InvalidJobMessage('task request params must map strings to strings')

        return cls(run_id=run_id, params=dict(params))

    def to_json(self) -> bytes:
        return json.dumps({'runID': self.run_id, 'params': self.params}).encode('utf-8')


@dataclass
class TaskResponse:
    """Progress or result of a job; status only moves forward"""
    run_id: int
    status: TaskRunStatus = TaskRunStatus.RECEIVED
    result: bytes = b''
    failure_message: str = ''

    def transition(self, status: TaskRunStatus) -> None:
        """
        Move to a new status

        Raises:
            ValueError: If the move is not allowed, e.g. out of a terminal state
        """
        status = TaskRunStatus(status)
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"invalid task status transition {self.status.value} -> {status.value}")
        self.status = status

    def finish(self, result: bytes) -> None:
        self.transition(TaskRunStatus.FINISHED)
        self.result = result

    def fail(self, message: str) -> None:
        self.transition(TaskRunStatus.FAILED)
        self.failure_message = message

    def to_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {'runID': self.run_id, 'status': self.status.value}
        if self.result:
            document['result'] = base64.b64encode(self.result).decode('ascii')
        if self.failure_message:
            document['failureMessage'] = self.failure_message
        return document

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'TaskResponse':
        document = json.loads(data)
        return cls(
            run_id=document['runID'],
            status=TaskRunStatus(document['status']),
            result=base64.b64decode(document.get('result') or ''),
            failure_message=document.get('failureMessage') or '',
        )
