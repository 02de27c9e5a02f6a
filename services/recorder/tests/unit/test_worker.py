"""Unit tests for the Celery sweep task."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.core.container import build_container
from app.models.schemas import ProviderStatus, SweepResult

import worker


class TestSweepWorker:
    """Test cases for the sweep worker."""

    def test_beat_schedule(self):
        schedule = worker.celery_app.conf.beat_schedule["sweep-bots"]

        assert schedule["task"] == "worker.sweep_bots"
        assert schedule["schedule"] == timedelta(seconds=worker.settings.sweep_interval_seconds)
        assert schedule["options"]["expires"] == worker.settings.sweep_interval_seconds

    @pytest.mark.asyncio
    async def test_run_sweep_with_container(self, db, test_settings, reconciler, meeting, t0):
        provider = AsyncMock()
        provider.get_bot = AsyncMock(return_value=ProviderStatus(bot_id="b1", code="joining_call"))
        container = build_container(test_settings, db=db, provider=provider)
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        result = await worker.run_sweep(container)

        assert result["checked"] == 1
        assert result["updated"] == 1
        assert result["details"][0]["new_status"] == "joining"

    def test_sweep_task(self):
        summary = SweepResult(checked=2, updated=1).model_dump(mode="json")
        with patch.object(worker, "run_sweep", new=AsyncMock(return_value=summary)):
            result = worker.sweep_bots.apply().get()

        assert result["checked"] == 2
        assert result["updated"] == 1
