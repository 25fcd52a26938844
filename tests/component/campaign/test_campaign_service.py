"""
Component Tests for CampaignService

Tests the campaign lifecycle with in-memory dependencies.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_engine.protocols import (
    AudienceResolutionError,
    CampaignNotFoundError,
    CampaignValidationError,
    InvalidCampaignStateError,
)
from tests.contracts.campaign.data_contract import (
    CampaignStatus,
    CampaignType,
    CampaignUpdateRequest,
    JobStatus,
    TargetAudience,
    ThrottlingSettings,
    CampaignSettings,
    TriggerType,
)


class TestCampaignServiceCreate:
    """Tests for campaign creation"""

    @pytest.mark.asyncio
    async def test_create_campaign_starts_as_draft(
        self, campaign_service, factory, recipients, tenant_id, mock_event_bus
    ):
        """New campaigns are drafts with an estimated audience"""
        # Given: A valid create request
        request = factory.make_create_request()

        # When: Creating the campaign
        campaign = await campaign_service.create_campaign(request, tenant_id, "usr_1")

        # Then: Draft with generated id, audience estimate and created event
        assert campaign.campaign_id.startswith("cmp_")
        assert campaign.status == CampaignStatus.DRAFT
        assert campaign.tenant_id == tenant_id
        assert campaign.created_by == "usr_1"
        assert campaign.estimated_recipients == 2
        assert len(mock_event_bus.get_events_by_name("campaign.created")) == 1

    @pytest.mark.asyncio
    async def test_create_email_without_subject_rejected(self, campaign_service, factory, tenant_id):
        """Email campaigns need a subject"""
        request = factory.make_create_request(subject=None)

        with pytest.raises(CampaignValidationError) as exc:
            await campaign_service.create_campaign(request, tenant_id, "usr_1")

        assert exc.value.field == "subject"

    @pytest.mark.asyncio
    async def test_create_survives_recipient_source_outage(
        self, campaign_service, factory, tenant_id, mock_recipient_source
    ):
        """Audience estimation failures do not block creation"""
        mock_recipient_source.error = ConnectionError("customer service down")

        campaign = await campaign_service.create_campaign(
            factory.make_create_request(), tenant_id, "usr_1"
        )

        assert campaign.estimated_recipients == 0


class TestCampaignServiceRead:
    """Tests for get and list"""

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, campaign_service, mock_repository, factory):
        campaign = await mock_repository.save_campaign(factory.make_campaign(tenant_id="tnt_a"))

        assert (await campaign_service.get_campaign(campaign.campaign_id, "tnt_a")).name == campaign.name
        with pytest.raises(CampaignNotFoundError):
            await campaign_service.get_campaign(campaign.campaign_id, "tnt_b")

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, campaign_service, mock_repository, factory, tenant_id):
        await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.DRAFT))
        await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.ACTIVE))
        await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.PAUSED))

        campaigns, total = await campaign_service.list_campaigns(
            tenant_id, status=[CampaignStatus.ACTIVE, CampaignStatus.PAUSED]
        )

        assert total == 2
        assert {c.status for c in campaigns} == {CampaignStatus.ACTIVE, CampaignStatus.PAUSED}


class TestCampaignServiceUpdate:
    """Tests for definition and status updates"""

    @pytest.mark.asyncio
    async def test_update_definition_fields(
        self, campaign_service, mock_repository, factory, tenant_id, mock_event_bus
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign())

        updated = await campaign_service.update_campaign(
            campaign.campaign_id,
            CampaignUpdateRequest(name="  Renamed  ", content="New body"),
            tenant_id,
            "usr_2",
        )

        assert updated.name == "Renamed"
        assert updated.content == "New body"
        assert updated.updated_by == "usr_2"
        events = mock_event_bus.get_events_by_name("campaign.updated")
        assert set(events[0].payload["changed_fields"]) == {"name", "content"}

    @pytest.mark.asyncio
    async def test_audience_change_recomputes_estimate(
        self, campaign_service, mock_repository, factory, recipients, tenant_id
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign())

        updated = await campaign_service.update_campaign(
            campaign.campaign_id,
            CampaignUpdateRequest(target_audience=TargetAudience(customer_ids=["r1"])),
            tenant_id,
            "usr_2",
        )

        assert updated.estimated_recipients == 1

    @pytest.mark.asyncio
    async def test_completed_campaign_cannot_be_edited(
        self, campaign_service, mock_repository, factory, tenant_id
    ):
        campaign = await mock_repository.save_campaign(
            factory.make_campaign(status=CampaignStatus.COMPLETED)
        )

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.update_campaign(
                campaign.campaign_id, CampaignUpdateRequest(name="x"), tenant_id, "usr_2"
            )

    @pytest.mark.asyncio
    async def test_invalid_status_transition_is_validation_error(
        self, campaign_service, mock_repository, factory, tenant_id
    ):
        """draft -> paused is not in the transition table"""
        campaign = await mock_repository.save_campaign(factory.make_campaign())

        with pytest.raises(CampaignValidationError) as exc:
            await campaign_service.update_campaign(
                campaign.campaign_id,
                CampaignUpdateRequest(status=CampaignStatus.PAUSED),
                tenant_id,
                "usr_2",
            )

        assert exc.value.field == "status"
        assert mock_repository.stored(campaign.campaign_id).status == CampaignStatus.DRAFT

    @pytest.mark.asyncio
    async def test_activating_manual_campaign_executes_it(
        self, campaign_service, mock_repository, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign())

        updated = await campaign_service.update_campaign(
            campaign.campaign_id,
            CampaignUpdateRequest(status=CampaignStatus.ACTIVE),
            tenant_id,
            "usr_2",
        )

        assert len(mock_task_queue.jobs) == 2
        assert updated.status == CampaignStatus.COMPLETED
        assert updated.sent_count == 2

    @pytest.mark.asyncio
    async def test_cancelling_removes_pending_jobs(
        self, campaign_service, executor, mock_repository, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign(
            status=CampaignStatus.ACTIVE, trigger_type=TriggerType.RECURRING
        ))
        await executor.execute_campaign(campaign.campaign_id)
        assert len(mock_task_queue.by_status(JobStatus.PENDING)) == 2

        updated = await campaign_service.update_campaign(
            campaign.campaign_id,
            CampaignUpdateRequest(status=CampaignStatus.CANCELLED),
            tenant_id,
            "usr_2",
        )

        assert updated.status == CampaignStatus.CANCELLED
        assert mock_task_queue.by_status(JobStatus.PENDING) == []


class TestCampaignServiceLifecycle:
    """Tests for launch, pause, resume and delete"""

    @pytest.mark.asyncio
    async def test_launch_manual_campaign_delivers_wave(
        self, campaign_service, mock_repository, mock_task_queue, factory, recipients, tenant_id
    ):
        """Manual email campaign, 2 recipients: 2 jobs, sentCount 2, completed"""
        # Given: A draft manual campaign
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(), tenant_id, "usr_1"
        )

        # When: Launching it
        launched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        # Then: One job per recipient and the campaign completes
        assert len(mock_task_queue.jobs) == 2
        assert {j.recipient_id for j in mock_task_queue.jobs.values()} == {"r1", "r2"}
        assert launched.sent_count == 2
        assert launched.status == CampaignStatus.COMPLETED
        assert launched.started_at is not None
        assert launched.completed_at is not None
        actions = [e.action for e in launched.execution_log]
        assert actions == ["launched", "executed"]

    @pytest.mark.asyncio
    async def test_launch_future_scheduled_campaign_waits(
        self, campaign_service, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(
                trigger_type=TriggerType.SCHEDULED,
                scheduled_at=datetime.now(timezone.utc) + timedelta(hours=2),
            ),
            tenant_id,
            "usr_1",
        )

        launched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert launched.status == CampaignStatus.SCHEDULED
        assert mock_task_queue.jobs == {}

    @pytest.mark.asyncio
    async def test_launch_overdue_scheduled_campaign_runs_now(
        self, campaign_service, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(
                trigger_type=TriggerType.SCHEDULED,
                scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=5),
            ),
            tenant_id,
            "usr_1",
        )

        launched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert launched.status == CampaignStatus.COMPLETED
        assert len(mock_task_queue.jobs) == 2

    @pytest.mark.asyncio
    async def test_launch_recurring_campaign_only_activates(
        self, campaign_service, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(
                trigger_type=TriggerType.RECURRING,
                recurring_config={"frequency": "weekly", "interval": 1},
            ),
            tenant_id,
            "usr_1",
        )

        launched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert launched.status == CampaignStatus.ACTIVE
        assert mock_task_queue.jobs == {}

    @pytest.mark.asyncio
    async def test_launch_with_unreachable_audience_returns_to_draft(
        self, campaign_service, mock_repository, mock_task_queue, mock_recipient_source, factory,
        recipients, tenant_id
    ):
        # Given: A draft manual campaign while the recipient source is down
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(), tenant_id, "usr_1"
        )
        mock_recipient_source.error = ConnectionError("customer service down")

        # When: Launching it
        with pytest.raises(AudienceResolutionError):
            await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        # Then: Nothing was sent and the campaign is a draft again
        stored = mock_repository.stored(campaign.campaign_id)
        assert stored.status == CampaignStatus.DRAFT
        assert stored.started_at is None
        assert mock_task_queue.jobs == {}
        actions = [e.action for e in stored.execution_log]
        assert actions == ["launched", "resolution_failed", "activation_reverted"]

        # And: Once the source recovers the same campaign launches normally
        mock_recipient_source.error = None
        relaunched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")
        assert relaunched.status == CampaignStatus.COMPLETED
        assert relaunched.sent_count == 2

    @pytest.mark.asyncio
    async def test_launch_claims_the_wave_once(
        self, campaign_service, mock_repository, mock_task_queue, factory, recipients, tenant_id
    ):
        """The launch hands its own activation to the executor; no second claim from active"""
        campaign = await campaign_service.create_campaign(
            factory.make_create_request(), tenant_id, "usr_1"
        )

        launched = await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert len(mock_task_queue.jobs) == 2
        assert launched.last_executed_at is not None
        assert [e.action for e in launched.execution_log].count("executed") == 1

    @pytest.mark.asyncio
    async def test_launch_non_draft_rejected(self, campaign_service, mock_repository, factory, tenant_id):
        campaign = await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.ACTIVE))

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.launch_campaign(campaign.campaign_id, tenant_id, "usr_1")

    @pytest.mark.asyncio
    async def test_pause_draft_rejected(self, campaign_service, mock_repository, factory, tenant_id):
        campaign = await mock_repository.save_campaign(factory.make_campaign())

        with pytest.raises(InvalidCampaignStateError) as exc:
            await campaign_service.pause_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert exc.value.current_status == CampaignStatus.DRAFT

    @pytest.mark.asyncio
    async def test_pause_removes_pending_jobs_before_delivery(
        self,
        campaign_service,
        executor,
        worker_pool,
        mock_repository,
        mock_task_queue,
        mock_channel_sender,
        factory,
        recipients,
        tenant_id,
    ):
        """Throttled wave paused before any job runs: nothing is delivered"""
        # Given: An active recurring campaign with throttling and a queued wave
        campaign = await mock_repository.save_campaign(factory.make_campaign(
            status=CampaignStatus.ACTIVE,
            trigger_type=TriggerType.RECURRING,
            settings=CampaignSettings(throttling=ThrottlingSettings(enabled=True, max_per_hour=2)),
        ))
        await executor.execute_campaign(campaign.campaign_id)
        assert sorted(mock_task_queue.delays.values()) == [0, 1_800_000]

        # When: Pausing the campaign, then letting workers run
        paused = await campaign_service.pause_campaign(campaign.campaign_id, tenant_id, "usr_1")
        processed = await worker_pool.drain()

        # Then: Pending jobs were removed and none were delivered
        assert paused.status == CampaignStatus.PAUSED
        assert processed == 0
        assert mock_task_queue.jobs == {}
        assert mock_channel_sender.sent == []
        assert paused.delivered_count == 0
        assert paused.execution_log[-1].action == "paused"
        assert paused.execution_log[-1].details["removed_jobs"] == 2

    @pytest.mark.asyncio
    async def test_resume_paused_campaign(
        self, campaign_service, mock_repository, mock_task_queue, factory, tenant_id, mock_event_bus
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.PAUSED))

        resumed = await campaign_service.resume_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert resumed.status == CampaignStatus.ACTIVE
        assert mock_task_queue.jobs == {}
        assert mock_repository.stored(campaign.campaign_id).execution_log[-1].action == "resumed"
        assert len(mock_event_bus.get_events_by_name("campaign.resumed")) == 1

    @pytest.mark.asyncio
    async def test_resume_active_rejected(self, campaign_service, mock_repository, factory, tenant_id):
        campaign = await mock_repository.save_campaign(factory.make_campaign(status=CampaignStatus.ACTIVE))

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.resume_campaign(campaign.campaign_id, tenant_id, "usr_1")

    @pytest.mark.asyncio
    async def test_delete_active_campaign_cancels_and_hides_it(
        self, campaign_service, executor, mock_repository, mock_task_queue, factory, recipients, tenant_id
    ):
        campaign = await mock_repository.save_campaign(factory.make_campaign(
            status=CampaignStatus.ACTIVE, trigger_type=TriggerType.RECURRING
        ))
        await executor.execute_campaign(campaign.campaign_id)

        deleted = await campaign_service.delete_campaign(campaign.campaign_id, tenant_id, "usr_1")

        assert deleted is True
        assert mock_repository.stored(campaign.campaign_id).status == CampaignStatus.CANCELLED
        assert mock_task_queue.jobs == {}
        with pytest.raises(CampaignNotFoundError):
            await campaign_service.get_campaign(campaign.campaign_id, tenant_id)


class TestCampaignServiceAnalytics:
    """Tests for analytics reads"""

    @pytest.mark.asyncio
    async def test_analytics_and_summary(self, campaign_service, mock_repository, factory, tenant_id):
        await mock_repository.save_campaign(factory.make_campaign(
            status=CampaignStatus.ACTIVE, sent_count=10, delivered_count=8, opened_count=4, clicked_count=1
        ))
        other = await mock_repository.save_campaign(factory.make_campaign(
            campaign_type=CampaignType.SMS, sent_count=10, delivered_count=10
        ))

        analytics = await campaign_service.get_analytics(other.campaign_id, tenant_id)
        summary = await campaign_service.get_summary(tenant_id)

        assert analytics.delivery_rate == 1.0
        assert summary.total_campaigns == 2
        assert summary.active_campaigns == 1
        assert summary.total_sent == 20
        assert summary.total_opened == 4

    @pytest.mark.asyncio
    async def test_analytics_unknown_campaign(self, campaign_service, tenant_id):
        with pytest.raises(CampaignNotFoundError):
            await campaign_service.get_analytics("cmp_missing", tenant_id)
