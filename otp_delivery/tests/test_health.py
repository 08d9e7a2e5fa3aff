import itertools

from otp_delivery.models.channel import AggregateStatus, DeliveryChannel, ServiceStatus
from otp_delivery.services.health import ChannelHealthBoard, aggregate, aggregate_all

from conftest import service

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL


class TestAggregate:

    def test_healthy_and_degraded_is_limited(self):
        result = aggregate(SMS, [
            service("a", SMS, ServiceStatus.HEALTHY),
            service("b", SMS, ServiceStatus.DEGRADED),
        ])
        assert result.aggregate_status == AggregateStatus.LIMITED
        assert result.available is True

    def test_empty_list_is_down(self):
        result = aggregate(SMS, [])
        assert result.aggregate_status == AggregateStatus.DOWN
        assert result.available is False
        assert result.services == []

    def test_none_is_down(self):
        assert aggregate(EMAIL, None).aggregate_status == AggregateStatus.DOWN

    def test_all_healthy_is_available(self):
        result = aggregate(SMS, [service("a", SMS), service("b", SMS)])
        assert result.aggregate_status == AggregateStatus.AVAILABLE
        assert result.label == "SMS"

    def test_no_healthy_service_is_down(self):
        result = aggregate(SMS, [
            service("a", SMS, ServiceStatus.DEGRADED),
            service("b", SMS, ServiceStatus.DOWN),
        ])
        assert result.aggregate_status == AggregateStatus.DOWN
        assert result.available is False

    def test_other_channel_services_are_ignored(self):
        result = aggregate(SMS, [service("smtp", EMAIL)])
        assert result.aggregate_status == AggregateStatus.DOWN
        assert result.services == []

    def test_every_status_combination(self):
        statuses = list(ServiceStatus)
        for size in range(0, 4):
            for combo in itertools.product(statuses, repeat=size):
                services = [service(f"s{i}", SMS, status) for i, status in enumerate(combo)]
                result = aggregate(SMS, services)
                healthy = [s for s in combo if s == ServiceStatus.HEALTHY]
                assert (result.aggregate_status == AggregateStatus.DOWN) == (not healthy)
                assert (result.aggregate_status == AggregateStatus.AVAILABLE) == (
                    bool(combo) and len(healthy) == len(combo)
                )
                assert aggregate(SMS, list(reversed(services))).aggregate_status == result.aggregate_status


class TestAggregateAll:

    def test_missing_channels_are_down(self):
        results = aggregate_all({SMS: [service("a", SMS)]})
        by_channel = {r.channel: r.aggregate_status for r in results}
        assert by_channel[SMS] == AggregateStatus.AVAILABLE
        assert by_channel[EMAIL] == AggregateStatus.DOWN
        assert by_channel[DeliveryChannel.WHATSAPP] == AggregateStatus.DOWN


class TestChannelHealthBoard:

    def test_update_replaces_services(self):
        board = ChannelHealthBoard()
        board.update(SMS, [service("a", SMS)])
        assert board.availability(SMS).aggregate_status == AggregateStatus.AVAILABLE

        board.update(SMS, [service("a", SMS, ServiceStatus.DOWN)])
        assert board.availability(SMS).aggregate_status == AggregateStatus.DOWN
        assert len(board.services(SMS)) == 1

    def test_availabilities_follow_configured_channels(self):
        board = ChannelHealthBoard(channels=[EMAIL, SMS])
        assert [a.channel for a in board.availabilities()] == [EMAIL, SMS]

    def test_unreported_channel_is_down(self):
        board = ChannelHealthBoard()
        assert board.availability(EMAIL).available is False
