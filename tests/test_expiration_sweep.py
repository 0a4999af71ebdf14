import json

import pytest

from campaign_sync.schemas.campaign import CampaignCreate
from campaign_sync.services.expiration_sweep import (
    DAY_MS,
    ExpirationSweep,
    SweepRun,
    card_lock_key,
    exp_last_run_key,
    exp_log_key,
)
from campaign_sync.services.stage_tracker import entries_key

from conftest import make_card

NOW = 1_700_000_000_000
OLD = NOW - 4 * DAY_MS


def _campaign(value: str, base=(1, 10), exp_target=(5, 50), days: int = 3, **extra) -> CampaignCreate:
    data = {
        "name": value,
        "v1": {"trigger_rule": {"value": value}, "target": {"pipeline_id": 2, "status_id": 20}},
        "exp": {"days": days, "target": {"pipeline_id": exp_target[0], "status_id": exp_target[1]}},
    }
    if base is not None:
        data["base"] = {"pipeline_id": base[0], "status_id": base[1]}
    data.update(extra)
    return CampaignCreate.model_validate(data)


@pytest.fixture
def sweep(registry, locator, mover, tracker, store):
    def build(**kwargs):
        return ExpirationSweep(registry, locator, mover, tracker, store, clock_ms=lambda: NOW, **kwargs)

    return build


class TestSweepRun:
    def test_claim_once_per_run(self):
        run = SweepRun()
        assert run.claim("c1", 1) is True
        assert run.claim("c1", 1) is False
        assert run.claim("c2", 1) is True
        run.clear()
        assert run.claim("c1", 1) is True


class TestExpirationSweep:
    @pytest.mark.asyncio
    async def test_moves_due_cards_and_counts_once(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.extend([make_card(1), make_card(2)])
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)

        report = await sweep().run()

        assert report.campaigns_checked == 1
        assert report.total_cards_checked == 2
        assert report.total_cards_moved == 1
        assert report.errors == []
        assert fake_crm.find(1)["status_id"] == 50
        assert fake_crm.find(2)["status_id"] == 10
        assert (await registry.get(campaign.id)).exp_count == 1
        assert await tracker.entered_at(campaign.id, 1) is None
        assert await tracker.entered_at(campaign.id, 2) == NOW
        assert card_lock_key(campaign.id, 1) in fake_redis.data

        log = [json.loads(item) for item in fake_redis.data[exp_log_key(campaign.id)]]
        assert log[0]["cardId"] == 1
        assert log[0]["enteredAt"] == OLD
        assert log[0]["threshold"] == NOW - 3 * DAY_MS
        assert fake_redis.data[exp_last_run_key(campaign.id)] == str(NOW)

    @pytest.mark.asyncio
    async def test_second_run_does_not_double_count(self, sweep, registry, tracker, fake_crm):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)

        first = await sweep().run()
        second = await sweep().run()

        assert first.total_cards_moved == 1
        assert second.total_cards_moved == 0
        assert (await registry.get(campaign.id)).exp_count == 1
        assert len(fake_crm.put_requests()) == 1

    @pytest.mark.asyncio
    async def test_failing_campaign_does_not_block_others(self, sweep, registry, tracker, fake_crm):
        a = await registry.create(_campaign("alpha", base=(1, 10)))
        b = await registry.create(_campaign("beta", base=(3, 30), exp_target=(6, 60)))
        fake_crm.cards.extend([make_card(1, 1, 10), make_card(2, 3, 30)])
        fake_crm.failing_ids.add(1)
        await tracker.record_entry(a.id, 1, at_ms=OLD)
        await tracker.record_entry(b.id, 2, at_ms=OLD)

        report = await sweep().run()

        by_id = {result.campaign_id: result for result in report.campaigns}
        assert by_id[a.id].cards_moved == 0
        assert len(by_id[a.id].errors) == 1
        assert by_id[b.id].cards_moved == 1
        assert report.total_cards_moved == 1
        assert report.ok is False
        assert report.errors[0].startswith(f"{a.id}: card 1")
        assert (await registry.get(a.id)).exp_count == 0
        assert (await registry.get(b.id)).exp_count == 1

    @pytest.mark.asyncio
    async def test_failed_move_releases_card_lock(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        fake_crm.failing_ids.add(1)
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)

        await sweep().run()

        assert card_lock_key(campaign.id, 1) not in fake_redis.data
        assert await tracker.entered_at(campaign.id, 1) == OLD

    @pytest.mark.asyncio
    async def test_card_locked_by_other_run_is_skipped(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)
        fake_redis.data[card_lock_key(campaign.id, 1)] = "other-run"

        report = await sweep().run()

        assert report.total_cards_checked == 1
        assert report.total_cards_moved == 0
        assert report.campaigns[0].cards_skipped == 1
        assert fake_crm.put_requests() == []

    @pytest.mark.asyncio
    async def test_campaigns_without_expiry_or_base_are_skipped(self, sweep, registry, fake_crm):
        await registry.create(_campaign("alpha", exp=None))
        await registry.create(_campaign("beta", base=None))
        await registry.create(_campaign("gamma", days=0))

        report = await sweep().run()

        assert report.campaigns_checked == 0
        assert report.errors == []
        assert fake_crm.list_requests() == []

    @pytest.mark.asyncio
    async def test_campaign_without_base_is_logged_and_others_still_run(self, sweep, registry, tracker, fake_crm, caplog):
        no_base = await registry.create(_campaign("alpha", base=None))
        other = await registry.create(_campaign("beta"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(other.id, 1, at_ms=OLD)

        with caplog.at_level("INFO", logger="campaign_sync.expiration_sweep"):
            report = await sweep().run()

        assert [result.campaign_id for result in report.campaigns] == [other.id]
        assert report.total_cards_moved == 1
        skipped = [r for r in caplog.records if r.getMessage() == "Campaign has no base stage, skipping"]
        assert skipped[0].context == {"campaign_id": no_base.id}

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_keeps_move_counts(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)
        fake_redis.fail_on.add("lpush")

        report = await sweep().run()

        assert (await registry.get(campaign.id)).exp_count == 1
        assert report.total_cards_moved == 1
        assert report.total_cards_checked == 1
        assert report.campaigns[0].cards_moved == 1
        assert report.ok is False
        assert report.errors[0].startswith(f"{campaign.id}: KV lpush {exp_log_key(campaign.id)}")

    @pytest.mark.asyncio
    async def test_malformed_legacy_record_does_not_stop_sweep(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)
        fake_redis.data["campaigns:index"]["legacy"] = 0
        fake_redis.data["campaigns:item:legacy"] = '{"id": "legacy", "v1": "promo", "created_at": 99999999999999999}'

        report = await sweep().run()

        assert report.ok is True
        assert report.total_cards_moved == 1

    @pytest.mark.asyncio
    async def test_inactive_campaigns_are_skipped(self, sweep, registry, tracker, fake_crm):
        campaign = await registry.create(_campaign("alpha", active=False))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)

        report = await sweep().run()

        assert report.campaigns_checked == 0
        assert fake_crm.find(1)["status_id"] == 10

    @pytest.mark.asyncio
    async def test_vanished_card_is_benign(self, sweep, registry, tracker, fake_crm):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        fake_crm.vanished_ids.add(1)
        await tracker.record_entry(campaign.id, 1, at_ms=OLD)

        report = await sweep().run()

        assert report.errors == []
        assert report.total_cards_moved == 0
        assert await tracker.entered_at(campaign.id, 1) is None

    @pytest.mark.asyncio
    async def test_prunes_entries_after_complete_scan(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.append(make_card(1))
        await tracker.record_entry(campaign.id, 99, at_ms=OLD)

        await sweep().run()

        assert set(fake_redis.data[entries_key(campaign.id)]) == {"1"}

    @pytest.mark.asyncio
    async def test_truncated_scan_keeps_entries(self, sweep, registry, tracker, fake_crm, fake_redis):
        campaign = await registry.create(_campaign("alpha"))
        fake_crm.cards.extend([make_card(i) for i in range(1, 6)])
        await tracker.record_entry(campaign.id, 99, at_ms=OLD)

        await sweep(page_size=2, page_budget=1).run()

        assert "99" in fake_redis.data[entries_key(campaign.id)]

    @pytest.mark.asyncio
    async def test_deadline_reports_unreached_campaigns(self, sweep, registry, fake_crm):
        await registry.create(_campaign("alpha", base=(1, 10)))
        late = await registry.create(_campaign("beta", base=(3, 30)))
        ticks = iter([0.0, 0.0, 100.0])

        report = await sweep(deadline_seconds=5, monotonic=lambda: next(ticks)).run()

        assert report.campaigns_checked == 1
        assert report.errors == [f"{late.id}: deadline_exceeded"]

    @pytest.mark.asyncio
    async def test_unexpected_campaign_failure_is_folded_into_report(self, sweep, registry, tracker, fake_crm, monkeypatch):
        a = await registry.create(_campaign("alpha", base=(1, 10)))
        b = await registry.create(_campaign("beta", base=(3, 30), exp_target=(6, 60)))
        fake_crm.cards.append(make_card(2, 3, 30))
        await tracker.record_entry(b.id, 2, at_ms=OLD)

        runner = sweep()
        real_sweep = runner.sweep_campaign

        async def explode_for_a(campaign, run, budget):
            if campaign.id == a.id:
                raise RuntimeError("bad data")
            return await real_sweep(campaign, run, budget)

        monkeypatch.setattr(runner, "sweep_campaign", explode_for_a)

        report = await runner.run()

        assert report.campaigns_checked == 2
        assert report.errors == [f"{a.id}: bad data"]
        assert report.total_cards_moved == 1

    @pytest.mark.asyncio
    async def test_registry_failure_returns_report(self, sweep, fake_redis):
        fake_redis.fail_on.add("zrange")

        report = await sweep().run()

        assert report.ok is False
        assert report.errors[0].startswith("registry:")

    @pytest.mark.asyncio
    async def test_report_serializes_camel_case(self, sweep):
        report = await sweep().run()
        body = report.model_dump(by_alias=True)

        assert {"campaignsChecked", "totalCardsChecked", "totalCardsMoved", "errors"} <= set(body)
