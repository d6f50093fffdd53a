"""Tests for the task model and its wire encoding."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import UUID

import pytest

from conftest import TASK_ID, task_payload
from worker.errors import TaskDecodeError, TaskValidationError
from worker.model import NIL_UUID, Task, TaskStatus, TaskType

FIXED_TIME = datetime(2024, 2, 14, 12, 0, 0, tzinfo=timezone.utc)


def _task(**overrides) -> Task:
    fields = dict(
        id=TASK_ID,
        kind=TaskType.TTI,
        prompt="generate a cat",
        model_selector=1,
        metadata={"seed": 12345},
        created_at=FIXED_TIME,
        status=TaskStatus.PENDING,
    )
    fields.update(overrides)
    return Task(**fields)


class TestTaskEncoding:
    def test_wire_keys_and_symbols(self) -> None:
        data = json.loads(_task().to_json())

        assert data == {
            "uuid": "550e8400-e29b-41d4-a716-446655440000",
            "type": "TTI",
            "prompt": "generate a cat",
            "model": 1,
            "metadata": {"seed": 12345},
            "created_at": "2024-02-14T12:00:00Z",
            "status": "PENDING",
        }

    def test_null_metadata_is_encoded_as_null(self) -> None:
        data = _task(kind=TaskType.LLM, metadata=None, status=TaskStatus.PROCESSING).to_wire()

        assert data["metadata"] is None
        assert data["type"] == "LLM"
        assert data["status"] == "PROCESSING"

    @pytest.mark.parametrize("kind", list(TaskType))
    @pytest.mark.parametrize("status", list(TaskStatus))
    def test_round_trip(self, kind: TaskType, status: TaskStatus) -> None:
        task = _task(kind=kind, status=status)

        assert Task.from_json(task.to_json()) == task
        assert Task.from_payload(task.to_wire()) == task


class TestTaskDecoding:
    def test_decode_valid_payload(self) -> None:
        task = Task.from_payload(task_payload(metadata={"seed": 12345}))

        assert task.id == TASK_ID
        assert task.kind is TaskType.TTI
        assert task.prompt == "a cat"
        assert task.model_selector == 1
        assert task.metadata == {"seed": 12345}
        assert task.created_at == FIXED_TIME
        assert task.status is TaskStatus.PENDING

    def test_unknown_type_symbol_fails(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(type="INVALID"))

    def test_unknown_status_symbol_fails(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(status="DONE"))

    def test_ordinal_enum_values_are_rejected(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(type=0))
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(status=1))

    @pytest.mark.parametrize("selector", ["1", 1.0, True])
    def test_non_integer_model_selector_fails(self, selector) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(model=selector))
        with pytest.raises(TaskDecodeError):
            Task.from_json(json.dumps(task_payload(model=selector)))

    def test_bad_uuid_fails(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(task_payload(uuid="not-a-uuid"))

    def test_missing_uuid_fails(self) -> None:
        payload = task_payload()
        del payload["uuid"]

        with pytest.raises(TaskDecodeError):
            Task.from_payload(payload)

    def test_malformed_json_fails(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_json('{"uuid": ')

    def test_non_object_payload_fails(self) -> None:
        with pytest.raises(TaskDecodeError):
            Task.from_payload(["TTI", "a cat"])


class TestTaskBehaviour:
    def test_new_task(self) -> None:
        task = Task.new(TaskType.TTI, "a cat", 2)

        assert task.id != NIL_UUID
        assert task.status is TaskStatus.PENDING
        assert task.metadata == {}
        assert task.created_at.tzinfo is not None
        task.ensure_valid()

    def test_new_tasks_get_distinct_ids(self) -> None:
        assert Task.new(TaskType.TTI, "a", 1).id != Task.new(TaskType.TTI, "a", 1).id

    def test_nil_uuid_is_invalid(self) -> None:
        task = _task(id=UUID(int=0))

        with pytest.raises(TaskValidationError):
            task.ensure_valid()

    def test_nil_uuid_decodes_but_does_not_validate(self) -> None:
        task = Task.from_payload(task_payload(uuid="00000000-0000-0000-0000-000000000000"))

        with pytest.raises(TaskValidationError):
            task.ensure_valid()

    def test_update_status(self) -> None:
        task = _task()
        task.update_status(TaskStatus.FAILED)

        assert task.status is TaskStatus.FAILED
        assert task.to_wire()["status"] == "FAILED"

    def test_metadata_helpers(self) -> None:
        task = _task(metadata=None)

        assert task.get_metadata("seed") == (None, False)
        task.add_metadata("seed", 42)
        assert task.get_metadata("seed") == (42, True)
        assert task.metadata == {"seed": 42}
