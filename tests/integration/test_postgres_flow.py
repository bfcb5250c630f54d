from __future__ import annotations

from batchchain_api.app.storage import PostgresTaskStore


def test_store_claims_each_task_once(postgres_store: PostgresTaskStore) -> None:
    tasks = postgres_store.create_batch(["a", "b"], owner_id="integration-user", size="square")
    assert [task.batch_index for task in tasks] == [0, 1]

    claimed = postgres_store.transition(
        tasks[0].task_id,
        to_status="processing",
        expected_statuses=("queued",),
    )
    again = postgres_store.transition(
        tasks[0].task_id,
        to_status="processing",
        expected_statuses=("queued",),
    )

    assert claimed is not None
    assert claimed.attempts == 1
    assert again is None
    assert postgres_store.count_tasks(tasks[0].batch_id, status="processing") == 1
    queued = postgres_store.list_tasks(batch_id=tasks[0].batch_id, statuses=("queued",))
    assert [task.task_id for task in queued] == [tasks[1].task_id]


def test_batch_without_provider_fails_every_task(api_base_url: str, post_json, get_json) -> None:
    create_status, created = post_json(
        api_base_url,
        "/batches",
        {"prompts": ["first", "second"], "owner_id": "integration-user"},
    )
    assert create_status == 200
    batch_id = created["batch_id"]

    status_code, status = get_json(api_base_url, f"/batches/{batch_id}")
    assert status_code == 200
    assert status["total"] == 2
    assert status["failed"] == 2
    assert status["is_complete"] is True

    tasks_code, tasks = get_json(api_base_url, f"/batches/{batch_id}/tasks")
    assert tasks_code == 200
    assert {task["error_message"] for task in tasks} == {"No image provider configured"}


def test_watchdog_scan_of_finished_batch(api_base_url: str, post_json) -> None:
    _, created = post_json(
        api_base_url,
        "/batches",
        {"prompts": ["only"], "owner_id": "integration-user"},
    )

    scan_status, report = post_json(api_base_url, "/watchdog/scan", {"batch_id": created["batch_id"]})

    assert scan_status == 200
    assert report["tasks_checked"] == 1
    assert report["tasks_failed"] == 0
    assert report["tasks_restarted"] == 0
