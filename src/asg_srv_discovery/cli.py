#!/usr/bin/env python3
"""asg-srv-discovery - DNS-SD SRV records for EC2 Auto Scaling groups

Reacts to Auto Scaling lifecycle notifications (delivered through SNS) and
republishes one Route 53 SRV record set per service declared on the group, so
that every live member of the group is discoverable under each service name.

Each invocation recomputes the full record set from the current group
membership and submits it as a single atomic Route 53 change batch. Replaying
the same notification against an unchanged group yields the same batch.

Group tags:

    massive:DNS-SD:Route53:zone    Route 53 hosted zone id (e.g. Z1D633PJN98FT9)
    massive:DNS-SD:names           Comma-separated SRV record names
                                   (e.g. "_http._tcp.svc.internal,_grpc._tcp.svc.internal")
    massive:DNS-SD:ports           Comma-separated ports, same count and order as names
                                   (e.g. "80,9090")

Lifecycle handling:

    autoscaling:EC2_INSTANCE_LAUNCH      The launched instance is always included
    anything else (e.g. TERMINATE)       The instance named in the event is excluded,
                                         even if EC2 still reports it as running

    Instances in the "terminated" state (code 48) never contribute records.
    A service left with no live instances has its record set deleted; the
    deletion carries the records currently on file in Route 53.

Environment variables:

    LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
    DNS_SD_CONFIG_PATH     Optional YAML settings file
                           (default: /etc/asg-srv-discovery/config.yaml, ignored if absent)
                           Example settings file:
                             tags:
                               zone: "massive:DNS-SD:Route53:zone"
                               names: "massive:DNS-SD:names"
                               ports: "massive:DNS-SD:ports"
                             record_ttl: 60
                             hostname:
                               tag: "Name"
                             dry_run: false
    DRY_RUN                Log the planned change batch instead of submitting it
    AWS_REGION, AWS_PROFILE, ...
                           Standard boto3 session configuration

Entry points:

    Lambda:  asg_srv_discovery.cli.handler  (SNS-triggered)
    CLI:     asg-srv-discovery [EVENT_FILE]  (SNS event or bare lifecycle message,
                                              read from stdin when no file is given)
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError

# =============================================================================
# Configuration
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DNS_SD_CONFIG_PATH = os.getenv("DNS_SD_CONFIG_PATH", "/etc/asg-srv-discovery/config.yaml")
DRY_RUN = os.getenv("DRY_RUN", "")

# Group tag keys
ZONE_TAG = "massive:DNS-SD:Route53:zone"
NAMES_TAG = "massive:DNS-SD:names"
PORTS_TAG = "massive:DNS-SD:ports"

# EC2 / Auto Scaling
GROUP_NAME_FILTER = "tag:aws:autoscaling:groupName"
LAUNCH_EVENT = "autoscaling:EC2_INSTANCE_LAUNCH"
TERMINATE_EVENT = "autoscaling:EC2_INSTANCE_TERMINATE"
TERMINATED_STATE_CODE = 48

# Route 53
SRV_RECORD_TYPE = "SRV"
SRV_PRIORITY = 0
SRV_WEIGHT = 0
DEFAULT_RECORD_TTL = 60
DEFAULT_HOSTNAME_TAG = "Name"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class ReconcileError(Exception):
    """Base class for every failure that aborts a reconciliation.

    ``retryable`` tells the invoking transport whether redelivering the same
    event can succeed without operator action.
    """

    retryable = False


class MalformedEventError(ReconcileError):
    """The inbound notification is absent or cannot be decoded."""


class MissingConfigurationError(ReconcileError):
    """The group lacks one of the required DNS-SD tags."""


class ManifestShapeError(ReconcileError):
    """The DNS-SD tags are present but inconsistent (count, port or duplicate)."""


class InvalidSettingsError(ReconcileError):
    """The local settings file cannot be used."""


class NotFoundError(ReconcileError):
    """The group, its instances or an existing record set does not exist."""


class RemoteOperationError(ReconcileError):
    """An AWS API call failed. The botocore error is chained as ``__cause__``."""

    retryable = True


# =============================================================================
# Enums
# =============================================================================


class EventKind(Enum):
    """Lifecycle transition carried by an Auto Scaling notification.

    Only LAUNCH changes the inclusion rule; TERMINATE and OTHER both exclude
    the instance named in the event.
    """

    LAUNCH = "launch"
    TERMINATE = "terminate"
    OTHER = "other"

    @classmethod
    def from_event(cls, value: str) -> "EventKind":
        if value == LAUNCH_EVENT:
            return cls.LAUNCH
        if value == TERMINATE_EVENT:
            return cls.TERMINATE
        return cls.OTHER


class ChangeAction(Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class LifecycleEvent:
    """One Auto Scaling lifecycle notification."""

    instance_id: str
    group_name: str
    kind: EventKind
    raw_kind: str = ""


@dataclass(frozen=True)
class ServiceEndpoint:
    """A service name paired with the port it is served on."""

    name: str
    port: int


@dataclass(frozen=True)
class GroupManifest:
    """Service-discovery configuration declared by the group's tags."""

    zone_id: str
    services: Tuple[ServiceEndpoint, ...]

    @property
    def service_names(self) -> List[str]:
        return [s.name for s in self.services]


@dataclass(frozen=True)
class InstanceView:
    """Read-only snapshot of one group member."""

    instance_id: str
    state_code: int
    tags: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_terminated(self) -> bool:
        # The high byte of the state code is reserved for internal use by EC2.
        return (self.state_code & 0xFF) == TERMINATED_STATE_CODE

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "InstanceView":
        state = item.get("State") or {}
        return cls(
            instance_id=str(item.get("InstanceId") or ""),
            state_code=int(state.get("Code", 0)),
            tags={t["Key"]: str(t.get("Value") or "") for t in item.get("Tags", []) if "Key" in t},
        )


@dataclass(frozen=True)
class RecordSet:
    """A resource record set as currently stored in the hosted zone."""

    name: str
    type: str
    ttl: int
    values: Tuple[str, ...]

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RecordSet":
        return cls(
            name=str(item.get("Name") or ""),
            type=str(item.get("Type") or ""),
            ttl=int(item.get("TTL", 0)),
            values=tuple(r["Value"] for r in item.get("ResourceRecords", []) if "Value" in r),
        )

    def matches(self, name: str, record_type: str) -> bool:
        return self.type == record_type and _normalize_name(self.name) == _normalize_name(name)


@dataclass(frozen=True)
class RecordChange:
    """A single UPSERT or DELETE of one SRV record set."""

    action: ChangeAction
    name: str
    values: Tuple[str, ...]
    ttl: int = DEFAULT_RECORD_TTL
    type: str = SRV_RECORD_TYPE

    def to_api(self) -> Dict[str, Any]:
        return {
            "Action": self.action.value,
            "ResourceRecordSet": {
                "Name": self.name,
                "Type": self.type,
                "TTL": self.ttl,
                "ResourceRecords": [{"Value": v} for v in self.values],
            },
        }


@dataclass(frozen=True)
class ChangeBatch:
    """All record changes for one reconciliation, applied atomically."""

    zone_id: str
    changes: Tuple[RecordChange, ...]

    def to_request(self) -> Dict[str, Any]:
        """Keyword arguments for ``route53.change_resource_record_sets``."""
        return {
            "HostedZoneId": self.zone_id,
            "ChangeBatch": {"Changes": [c.to_api() for c in self.changes]},
        }


@dataclass(frozen=True)
class Settings:
    """Runtime settings, defaults overridable from the YAML settings file."""

    zone_tag: str = ZONE_TAG
    names_tag: str = NAMES_TAG
    ports_tag: str = PORTS_TAG
    record_ttl: int = DEFAULT_RECORD_TTL
    hostname_tag: str = DEFAULT_HOSTNAME_TAG
    dry_run: bool = False


# =============================================================================
# Group Registry Interface and Implementations
# =============================================================================


class GroupRegistry(ABC):
    """Abstract source of group metadata and membership."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the registry name for logging."""
        pass

    @abstractmethod
    def get_group_tags(self, group_name: str) -> Dict[str, str]:
        """Return the group's tags. Raises NotFoundError for an unknown group."""
        pass

    @abstractmethod
    def list_instances(self, group_name: str) -> List[InstanceView]:
        """Return every member of the group. Raises NotFoundError when empty."""
        pass


class AutoScalingGroupRegistry(GroupRegistry):
    """EC2 Auto Scaling registry backed by boto3 clients."""

    def __init__(self, autoscaling_client: Any, ec2_client: Any):
        self._autoscaling = autoscaling_client
        self._ec2 = ec2_client

    @property
    def name(self) -> str:
        return "EC2 Auto Scaling"

    def get_group_tags(self, group_name: str) -> Dict[str, str]:
        try:
            response = self._autoscaling.describe_auto_scaling_groups(
                AutoScalingGroupNames=[group_name]
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to describe Auto Scaling group '{group_name}': {e}")
            raise RemoteOperationError(f"DescribeAutoScalingGroups failed: {e}") from e

        groups = response.get("AutoScalingGroups") or []
        if not groups:
            raise NotFoundError(f"Auto Scaling group '{group_name}' not found")

        return {t["Key"]: str(t.get("Value") or "") for t in groups[0].get("Tags", []) if "Key" in t}

    def list_instances(self, group_name: str) -> List[InstanceView]:
        instances: List[InstanceView] = []
        paginator = self._ec2.get_paginator("describe_instances")
        try:
            for page in paginator.paginate(
                Filters=[{"Name": GROUP_NAME_FILTER, "Values": [group_name]}]
            ):
                for reservation in page.get("Reservations", []):
                    for item in reservation.get("Instances", []):
                        instances.append(InstanceView.from_api(item))
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to describe instances of '{group_name}': {e}")
            raise RemoteOperationError(f"DescribeInstances failed: {e}") from e

        if not instances:
            raise NotFoundError(f"No instances found for Auto Scaling group '{group_name}'")

        # EC2 does not guarantee enumeration order between calls.
        return sorted(instances, key=lambda i: i.instance_id)


# =============================================================================
# Record Store Interface and Implementations
# =============================================================================


class RecordStore(ABC):
    """Abstract DNS record store accepting atomic change batches."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the record store name for logging."""
        pass

    @abstractmethod
    def get_zone_name(self, zone_id: str) -> str:
        """Return the DNS name of the zone."""
        pass

    @abstractmethod
    def find_record_set(
        self, zone_id: str, name: str, record_type: str = SRV_RECORD_TYPE
    ) -> Optional[RecordSet]:
        """Return the record set stored under exactly ``name``/``record_type``, if any."""
        pass

    @abstractmethod
    def submit(self, batch: ChangeBatch) -> str:
        """Apply the batch atomically and return the change id."""
        pass


class Route53RecordStore(RecordStore):
    """Route 53 record store backed by a boto3 client."""

    def __init__(self, client: Any):
        self._client = client

    @property
    def name(self) -> str:
        return "Route 53"

    def get_zone_name(self, zone_id: str) -> str:
        try:
            response = self._client.get_hosted_zone(Id=zone_id)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to look up hosted zone {zone_id}: {e}")
            raise RemoteOperationError(f"GetHostedZone failed: {e}") from e
        return response["HostedZone"]["Name"]

    def find_record_set(
        self, zone_id: str, name: str, record_type: str = SRV_RECORD_TYPE
    ) -> Optional[RecordSet]:
        # Listing starts at the requested name/type, so the first entry is the
        # match when one exists; anything else is the next record in the zone.
        try:
            response = self._client.list_resource_record_sets(
                HostedZoneId=zone_id,
                StartRecordName=name,
                StartRecordType=record_type,
                MaxItems="1",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to list record sets for {name} in {zone_id}: {e}")
            raise RemoteOperationError(f"ListResourceRecordSets failed: {e}") from e

        for item in response.get("ResourceRecordSets", []):
            record_set = RecordSet.from_api(item)
            if record_set.matches(name, record_type):
                return record_set
        return None

    def submit(self, batch: ChangeBatch) -> str:
        try:
            response = self._client.change_resource_record_sets(**batch.to_request())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to submit change batch to {batch.zone_id}: {e}")
            raise RemoteOperationError(f"ChangeResourceRecordSets failed: {e}") from e

        change_info = response.get("ChangeInfo") or {}
        change_id = str(change_info.get("Id") or "")
        logger.info(
            f"Submitted {len(batch.changes)} change(s) to {batch.zone_id}: "
            f"{change_id} ({change_info.get('Status', 'UNKNOWN')})"
        )
        return change_id


# =============================================================================
# Hostname Generation
# =============================================================================


class HostnameGenerator(ABC):
    """Derives a stable, unique short hostname for an instance."""

    @abstractmethod
    def generate(self, instance: InstanceView) -> str:
        pass


class TagPrefixHostnameGenerator(HostnameGenerator):
    """``<tag value>-<instance id without "i-">``, or the bare instance id.

    The tag value is lowercased and reduced to a valid DNS label.
    """

    INVALID_LABEL_CHARS_RE = re.compile(r"[^a-z0-9-]+")

    def __init__(self, tag: str = DEFAULT_HOSTNAME_TAG):
        self._tag = tag

    def generate(self, instance: InstanceView) -> str:
        prefix = self.INVALID_LABEL_CHARS_RE.sub("-", instance.tags.get(self._tag, "").lower())
        prefix = prefix.strip("-")
        if not prefix:
            return instance.instance_id
        suffix = instance.instance_id[2:] if instance.instance_id.startswith("i-") else instance.instance_id
        return f"{prefix}-{suffix}"


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and not value.strip():
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _normalize_name(name: str) -> str:
    return name.rstrip(".").lower()


def _split_tag_list(value: str, tag: str) -> List[str]:
    """Split a comma-separated tag value, rejecting empty items."""
    items = [item.strip() for item in value.split(",")]
    if any(not item for item in items):
        raise ManifestShapeError(f"Tag '{tag}' contains an empty entry: '{value}'")
    return items


def _parse_port(value: str, service: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ManifestShapeError(f"Port '{value}' for service '{service}' is not a number") from None
    if not 0 < port < 65536:
        raise ManifestShapeError(f"Port {port} for service '{service}' is out of range")
    return port


def format_srv_value(port: int, target: str) -> str:
    return f"{SRV_PRIORITY} {SRV_WEIGHT} {port} {target}"


def load_settings(config_path: str, *, dry_run: bool = False) -> Settings:
    """Load settings from a YAML file, falling back to defaults.

    A missing file is not an error. An unreadable file or one with values of
    the wrong type raises InvalidSettingsError.
    """
    path = Path(config_path) if config_path else None
    if path is None or not path.is_file():
        return Settings(dry_run=dry_run)

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise InvalidSettingsError(f"Failed to load settings from {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidSettingsError(f"Settings file {path} must contain a mapping")

    tags = data.get("tags") or {}
    hostname = data.get("hostname") or {}
    if not isinstance(tags, dict) or not isinstance(hostname, dict):
        raise InvalidSettingsError(f"Settings file {path}: 'tags' and 'hostname' must be mappings")

    try:
        record_ttl = int(data.get("record_ttl", DEFAULT_RECORD_TTL))
    except (TypeError, ValueError) as e:
        raise InvalidSettingsError(f"Settings file {path}: invalid record_ttl: {e}") from e
    if record_ttl <= 0:
        raise InvalidSettingsError(f"Settings file {path}: record_ttl must be positive")

    settings = Settings(
        zone_tag=str(tags.get("zone") or ZONE_TAG).strip(),
        names_tag=str(tags.get("names") or NAMES_TAG).strip(),
        ports_tag=str(tags.get("ports") or PORTS_TAG).strip(),
        record_ttl=record_ttl,
        hostname_tag=str(hostname.get("tag") or DEFAULT_HOSTNAME_TAG).strip(),
        dry_run=dry_run or _parse_bool(data.get("dry_run"), default=False),
    )
    logger.debug(f"Loaded settings from {path}: {settings}")
    return settings


# =============================================================================
# Event Parsing
# =============================================================================


def extract_message(payload: Any) -> Any:
    """Unwrap the SNS Lambda envelope, passing bare messages through."""
    if not isinstance(payload, dict) or "Records" not in payload:
        return payload

    records = payload.get("Records")
    if not isinstance(records, list) or not records:
        raise MalformedEventError("No SNS Message found")
    if len(records) > 1:
        logger.warning(f"Received {len(records)} SNS records; only the first is processed")

    record = records[0]
    sns = record.get("Sns") if isinstance(record, dict) else None
    message = sns.get("Message") if isinstance(sns, dict) else None
    if not message:
        raise MalformedEventError("No SNS Message found")
    return message


def parse_lifecycle_event(message: Any) -> LifecycleEvent:
    """Decode an Auto Scaling notification body into a LifecycleEvent."""
    if message is None or message == "" or message == b"":
        raise MalformedEventError("No lifecycle message found")

    if isinstance(message, (str, bytes)):
        try:
            payload = json.loads(message)
        except ValueError as e:
            raise MalformedEventError(f"Lifecycle message is not valid JSON: {e}") from e
    else:
        payload = message

    if not isinstance(payload, dict):
        raise MalformedEventError(
            f"Lifecycle message must be a JSON object, got {type(payload).__name__}"
        )

    instance_id = payload.get("EC2InstanceId")
    group_name = payload.get("AutoScalingGroupName")
    raw_kind = payload.get("Event") or ""
    if not isinstance(instance_id, str) or not instance_id.strip():
        raise MalformedEventError("Lifecycle message is missing EC2InstanceId")
    if not isinstance(group_name, str) or not group_name.strip():
        raise MalformedEventError("Lifecycle message is missing AutoScalingGroupName")
    if not isinstance(raw_kind, str):
        raise MalformedEventError("Lifecycle message has a non-string Event")

    return LifecycleEvent(
        instance_id=instance_id.strip(),
        group_name=group_name.strip(),
        kind=EventKind.from_event(raw_kind),
        raw_kind=raw_kind,
    )


# =============================================================================
# Manifest, Record Sets and Change Planning
# =============================================================================


def read_manifest(tags: Dict[str, str], settings: Optional[Settings] = None) -> GroupManifest:
    """Read the zone id and (name, port) pairs from the group's tags."""
    settings = settings or Settings()

    values: Dict[str, str] = {}
    for key in (settings.zone_tag, settings.names_tag, settings.ports_tag):
        value = (tags.get(key) or "").strip()
        if not value:
            raise MissingConfigurationError(f"Group is missing required tag '{key}'")
        values[key] = value

    names = _split_tag_list(values[settings.names_tag], settings.names_tag)
    ports = _split_tag_list(values[settings.ports_tag], settings.ports_tag)
    if len(names) != len(ports):
        raise ManifestShapeError(
            f"Tag '{settings.names_tag}' declares {len(names)} service(s) but "
            f"'{settings.ports_tag}' declares {len(ports)} port(s)"
        )

    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ManifestShapeError(f"Duplicate service name(s): {', '.join(duplicates)}")

    services = tuple(
        ServiceEndpoint(name=name, port=_parse_port(port, name)) for name, port in zip(names, ports)
    )
    return GroupManifest(zone_id=values[settings.zone_tag], services=services)


def build_record_sets(
    manifest: GroupManifest,
    instances: List[InstanceView],
    event: LifecycleEvent,
    zone_name: str,
    hostname_generator: HostnameGenerator,
) -> Dict[str, List[str]]:
    """Compute the SRV values every declared service should publish.

    Every service name is present in the result, possibly with an empty list.
    Values follow the order of ``instances``.
    """
    desired: Dict[str, List[str]] = {service.name: [] for service in manifest.services}

    for instance in instances:
        if instance.is_terminated:
            logger.debug(f"Skipping terminated instance {instance.instance_id}")
            continue

        # A launching instance must be published even if the snapshot lags;
        # any other event removes the named instance even if still running.
        include = event.kind == EventKind.LAUNCH or instance.instance_id != event.instance_id
        if not include:
            logger.debug(f"Excluding {instance.instance_id} ({event.raw_kind or event.kind.value})")
            continue

        fqdn = ".".join([hostname_generator.generate(instance), zone_name])
        for service in manifest.services:
            desired[service.name].append(format_srv_value(service.port, fqdn))

    return desired


def plan_changes(
    zone_id: str,
    desired: Dict[str, List[str]],
    record_store: RecordStore,
    ttl: int = DEFAULT_RECORD_TTL,
) -> ChangeBatch:
    """Turn desired record lists into one change batch.

    Services with records are upserted. Services without records are deleted,
    which requires the records currently on file, so each of those triggers a
    lookup; a failed or empty lookup aborts the whole plan.
    """
    changes: List[RecordChange] = []
    for name, values in desired.items():
        if values:
            changes.append(
                RecordChange(action=ChangeAction.UPSERT, name=name, values=tuple(values), ttl=ttl)
            )
            continue

        existing = record_store.find_record_set(zone_id, name, SRV_RECORD_TYPE)
        if existing is None or not existing.values:
            raise NotFoundError(f"No existing {SRV_RECORD_TYPE} record set '{name}' to delete")

        logger.info(f"No live instances left for {name}; deleting {len(existing.values)} record(s)")
        changes.append(
            RecordChange(
                action=ChangeAction.DELETE,
                name=name,
                values=existing.values,
                ttl=existing.ttl,
                type=existing.type,
            )
        )

    return ChangeBatch(zone_id=zone_id, changes=tuple(changes))


# =============================================================================
# Core Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        registry: GroupRegistry,
        record_store: RecordStore,
        hostname_generator: HostnameGenerator,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.record_store = record_store
        self.hostname_generator = hostname_generator
        self.settings = settings or Settings()

    def handle(self, raw_event: Any) -> str:
        """Reconcile the group named by an SNS event or bare lifecycle message.

        Returns the id of the instance that triggered the event.
        """
        try:
            event = parse_lifecycle_event(extract_message(raw_event))
            return self.process_event(event)
        except ReconcileError as e:
            logger.error(
                f"Reconciliation aborted ({type(e).__name__}, retryable={e.retryable}): {e}"
            )
            raise

    def process_event(self, event: LifecycleEvent) -> str:
        logger.info(
            f"Reconciling group '{event.group_name}' for {event.raw_kind or 'unknown event'} "
            f"on {event.instance_id}"
        )

        manifest = read_manifest(self.registry.get_group_tags(event.group_name), self.settings)
        instances = self.registry.list_instances(event.group_name)
        zone_name = self.record_store.get_zone_name(manifest.zone_id)
        logger.info(
            f"Group '{event.group_name}': {len(instances)} instance(s), "
            f"services {', '.join(manifest.service_names)} in {zone_name}"
        )

        desired = build_record_sets(
            manifest, instances, event, zone_name, self.hostname_generator
        )
        batch = plan_changes(
            manifest.zone_id, desired, self.record_store, ttl=self.settings.record_ttl
        )
        for change in batch.changes:
            logger.info(f"{change.action.value} {change.name}: {len(change.values)} record(s)")

        if self.settings.dry_run:
            logger.info(
                f"Dry run, change batch not submitted: "
                f"{json.dumps(batch.to_request(), sort_keys=True)}"
            )
            return event.instance_id

        self.record_store.submit(batch)
        return event.instance_id


# =============================================================================
# Factory and Entry Points
# =============================================================================


def create_reconciler(settings: Settings, session: Any = None) -> Reconciler:
    """Build a Reconciler wired to AWS clients from one boto3 session."""
    session = session or boto3.session.Session()
    return Reconciler(
        registry=AutoScalingGroupRegistry(session.client("autoscaling"), session.client("ec2")),
        record_store=Route53RecordStore(session.client("route53")),
        hostname_generator=TagPrefixHostnameGenerator(settings.hostname_tag),
        settings=settings,
    )


_reconciler: Optional[Reconciler] = None


def get_reconciler() -> Reconciler:
    """Return the process-wide reconciler, creating it on first use."""
    global _reconciler
    if _reconciler is None:
        settings = load_settings(DNS_SD_CONFIG_PATH, dry_run=_parse_bool(DRY_RUN, default=False))
        _reconciler = create_reconciler(settings)
    return _reconciler


def handler(event: Dict[str, Any], context: Any = None) -> str:
    """AWS Lambda entry point for SNS-delivered lifecycle notifications."""
    return get_reconciler().handle(event)


def main():
    """Main entry point."""
    source = sys.argv[1] if len(sys.argv) > 1 else "-"

    try:
        if source == "-":
            raw = sys.stdin.read()
        else:
            raw = Path(source).read_text("utf-8")
    except OSError as e:
        logger.error(f"Cannot read event from {source}: {e}")
        sys.exit(1)

    try:
        payload = json.loads(raw)
    except ValueError as e:
        logger.error(f"Event in {source} is not valid JSON: {e}")
        sys.exit(1)

    try:
        reconciler = get_reconciler()
    except (InvalidSettingsError, BotoCoreError) as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(
        f"asg-srv-discovery: {reconciler.registry.name} -> {reconciler.record_store.name}"
        f"{' (dry run)' if reconciler.settings.dry_run else ''}"
    )

    try:
        instance_id = reconciler.handle(payload)
    except ReconcileError:
        # Already logged by the reconciler.
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    print(instance_id)


if __name__ == "__main__":
    main()
