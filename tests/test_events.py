"""Unit tests for lifecycle notification parsing."""

import json

import pytest

from asg_srv_discovery.cli import (
    EventKind,
    LifecycleEvent,
    MalformedEventError,
    extract_message,
    parse_lifecycle_event,
)


def make_message(
    instance_id: str = "i-0abc",
    group_name: str = "workers",
    event: str = "autoscaling:EC2_INSTANCE_LAUNCH",
) -> str:
    return json.dumps(
        {
            "EC2InstanceId": instance_id,
            "AutoScalingGroupName": group_name,
            "Event": event,
            "Service": "AWS Auto Scaling",
        }
    )


def make_sns_event(*messages: str) -> dict:
    return {
        "Records": [
            {"EventSource": "aws:sns", "Sns": {"Type": "Notification", "Message": m}}
            for m in messages
        ]
    }


class TestEventKind:
    """Tests for mapping Auto Scaling event names to EventKind."""

    def test_launch(self) -> None:
        assert EventKind.from_event("autoscaling:EC2_INSTANCE_LAUNCH") is EventKind.LAUNCH

    def test_terminate(self) -> None:
        assert EventKind.from_event("autoscaling:EC2_INSTANCE_TERMINATE") is EventKind.TERMINATE

    def test_anything_else_is_other(self) -> None:
        assert EventKind.from_event("autoscaling:EC2_INSTANCE_LAUNCH_ERROR") is EventKind.OTHER
        assert EventKind.from_event("") is EventKind.OTHER


class TestExtractMessage:
    """Tests for unwrapping the SNS Lambda envelope."""

    def test_returns_first_record_message(self) -> None:
        message = make_message()

        assert extract_message(make_sns_event(message)) == message

    def test_only_first_of_several_records_is_used(self) -> None:
        first = make_message(instance_id="i-1")
        second = make_message(instance_id="i-2")

        assert extract_message(make_sns_event(first, second)) == first

    def test_bare_message_passes_through(self) -> None:
        message = {"EC2InstanceId": "i-1"}

        assert extract_message(message) is message
        assert extract_message("raw") == "raw"

    def test_no_records_raises(self) -> None:
        with pytest.raises(MalformedEventError, match="No SNS Message found"):
            extract_message({"Records": []})

    def test_empty_message_raises(self) -> None:
        with pytest.raises(MalformedEventError):
            extract_message({"Records": [{"Sns": {"Message": ""}}]})

    def test_record_without_sns_raises(self) -> None:
        with pytest.raises(MalformedEventError):
            extract_message({"Records": [{"EventSource": "aws:sqs"}]})


class TestParseLifecycleEvent:
    """Tests for decoding the Auto Scaling notification body."""

    def test_parses_launch(self) -> None:
        event = parse_lifecycle_event(make_message())

        assert event == LifecycleEvent(
            instance_id="i-0abc",
            group_name="workers",
            kind=EventKind.LAUNCH,
            raw_kind="autoscaling:EC2_INSTANCE_LAUNCH",
        )

    def test_parses_terminate(self) -> None:
        event = parse_lifecycle_event(make_message(event="autoscaling:EC2_INSTANCE_TERMINATE"))

        assert event.kind is EventKind.TERMINATE

    def test_accepts_decoded_dict(self) -> None:
        event = parse_lifecycle_event(json.loads(make_message()))

        assert event.instance_id == "i-0abc"

    def test_missing_event_field_is_other(self) -> None:
        event = parse_lifecycle_event(
            json.dumps({"EC2InstanceId": "i-1", "AutoScalingGroupName": "workers"})
        )

        assert event.kind is EventKind.OTHER
        assert event.raw_kind == ""

    @pytest.mark.parametrize("message", [None, "", b""])
    def test_absent_message_raises(self, message) -> None:
        with pytest.raises(MalformedEventError, match="No lifecycle message"):
            parse_lifecycle_event(message)

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(MalformedEventError, match="not valid JSON"):
            parse_lifecycle_event("{not json")

    def test_non_object_raises(self) -> None:
        with pytest.raises(MalformedEventError, match="JSON object"):
            parse_lifecycle_event("[1, 2]")

    def test_missing_instance_id_raises(self) -> None:
        """Auto Scaling test notifications carry no instance id."""
        message = json.dumps(
            {"AutoScalingGroupName": "workers", "Event": "autoscaling:TEST_NOTIFICATION"}
        )

        with pytest.raises(MalformedEventError, match="EC2InstanceId"):
            parse_lifecycle_event(message)

    def test_missing_group_name_raises(self) -> None:
        with pytest.raises(MalformedEventError, match="AutoScalingGroupName"):
            parse_lifecycle_event(json.dumps({"EC2InstanceId": "i-1"}))

    def test_malformed_event_is_not_retryable(self) -> None:
        with pytest.raises(MalformedEventError) as exc_info:
            parse_lifecycle_event("")

        assert exc_info.value.retryable is False
