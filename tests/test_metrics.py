import asyncio
import json

import pytest

from verification_bot.core.metrics import MetricsService
from verification_bot.core.models import VerificationStatus


def _on_disk(path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_new_file_is_created_with_zeroes(tmp_path):
    path = tmp_path / "logs" / "metrics.json"
    MetricsService(path)

    assert _on_disk(path)["total_verifications"] == 0


def test_snapshot_reports_counts_and_average(tmp_path):
    service = MetricsService(tmp_path / "metrics.json")
    service.record_verification(VerificationStatus.SUCCESS, 0.9)
    service.record_verification(VerificationStatus.SUCCESS, 0.7)
    service.record_verification(VerificationStatus.FAILURE)
    service.record_verification(VerificationStatus.MANUAL_REVIEW, 0.8)
    service.increment_dm_cleanup(3)
    service.increment_rate_limit_hits()

    snapshot = service.snapshot()

    assert snapshot.total_verifications == 4
    assert snapshot.success_count == 2
    assert snapshot.failure_count == 1
    assert snapshot.manual_review_count == 1
    assert snapshot.average_confidence == pytest.approx(0.8)
    assert snapshot.confidence_samples == 3
    assert snapshot.dm_cleanup_count == 3
    assert snapshot.rate_limit_hits == 1


def test_writes_immediately_without_event_loop(tmp_path):
    path = tmp_path / "metrics.json"
    service = MetricsService(path)
    service.record_verification(VerificationStatus.SUCCESS, 1.0)

    assert _on_disk(path)["success_count"] == 1


@pytest.mark.asyncio
async def test_writes_are_debounced(tmp_path):
    path = tmp_path / "metrics.json"
    service = MetricsService(path, debounce_seconds=0.05)

    for _ in range(5):
        service.record_verification(VerificationStatus.FAILURE)
    assert _on_disk(path)["failure_count"] == 0

    await asyncio.sleep(0.2)
    assert _on_disk(path)["failure_count"] == 5


@pytest.mark.asyncio
async def test_flush_writes_pending_changes(tmp_path):
    path = tmp_path / "metrics.json"
    service = MetricsService(path, debounce_seconds=60)
    service.increment_dm_cleanup()

    service.flush()

    assert _on_disk(path)["dm_cleanup_count"] == 1


def test_counters_survive_restart(tmp_path):
    path = tmp_path / "metrics.json"
    MetricsService(path).record_verification(VerificationStatus.SUCCESS, 0.5)

    assert MetricsService(path).snapshot().success_count == 1


@pytest.mark.parametrize("content", ["{broken", "[1, 2, 3]"])
def test_corrupt_file_resets_counters(tmp_path, content):
    path = tmp_path / "metrics.json"
    path.write_text(content, encoding="utf-8")

    snapshot = MetricsService(path).snapshot()

    assert snapshot.total_verifications == 0
    assert snapshot.average_confidence == 0.0


def test_wrongly_typed_values_fall_back_per_key(tmp_path):
    path = tmp_path / "metrics.json"
    path.write_text(
        json.dumps({"total_verifications": "oops", "success_count": 4, "confidence_sum": True, "last_updated": "x"}),
        encoding="utf-8",
    )
    service = MetricsService(path)

    service.record_verification(VerificationStatus.SUCCESS, 0.5)
    snapshot = service.snapshot()

    assert snapshot.total_verifications == 1
    assert snapshot.success_count == 5
    assert snapshot.average_confidence == pytest.approx(0.5)
    assert snapshot.last_updated.startswith("20")
