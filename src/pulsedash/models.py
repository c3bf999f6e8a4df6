"""Data models for pulsedash."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable snapshot of one process."""

    pid: int
    ppid: int  # 0 = no parent
    name: str
    username: str
    status: str  # 'R', 'S', 'I', 'Z', 'D', 'T', '?'
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_rss: int  # Bytes
    memory_percent: float
    threads: int
    command_line: str
    create_time: float = 0.0  # epoch seconds


# ── Cache payloads ──────────────────────────────────────────────────────────
#
# The companion daemon serializes empty collections as JSON null, so every
# payload model maps an explicit null back to the field's default.


class CachePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _null_to_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None and info.field_name is not None:
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)
        return value


class PeerInfo(CachePayload):
    id: str = ""
    hostname: str = Field(default="", validation_alias=AliasChoices("hostname", "name"))
    dns_name: str = ""
    os: str = ""
    tailscale_ips: list[str] = Field(default_factory=list)
    online: bool = False
    last_seen: datetime | None = None
    exit_node: bool = False
    exit_node_option: bool = False
    tags: list[str] = Field(default_factory=list)
    rx_bytes: int = 0
    tx_bytes: int = 0


class MeshStatus(CachePayload):
    """Mesh-VPN status as written to ``tailscale.json``."""

    peers: list[PeerInfo] = Field(default_factory=list)
    magic_dns_suffix: str = ""
    tailnet_name: str = ""
    online_peers: int = 0
    total_peers: int = 0
    timestamp: datetime | None = None

    def online_peers_sorted(self) -> list[PeerInfo]:
        return sorted((p for p in self.peers if p.online), key=lambda p: p.hostname)


class NodeInfo(CachePayload):
    name: str = ""
    ready: bool = False
    roles: list[str] = Field(default_factory=list)
    cpu_capacity: str = ""
    mem_capacity: str = ""
    pod_count: int = 0


class PodCounts(CachePayload):
    total: int = 0
    running: int = 0
    pending: int = 0
    failed: int = 0


class NamespaceInfo(CachePayload):
    name: str = ""
    pod_counts: PodCounts = Field(default_factory=PodCounts)


class ClusterInfo(CachePayload):
    context: str = ""
    connected: bool = False
    error: str = ""
    nodes: list[NodeInfo] = Field(default_factory=list)
    namespaces: list[NamespaceInfo] = Field(default_factory=list)
    total_pods: int = 0
    running_pods: int = 0
    pending_pods: int = 0
    failed_pods: int = 0


class ClusterStatus(CachePayload):
    """Kubernetes cluster state as written to ``k8s.json``."""

    clusters: list[ClusterInfo] = Field(default_factory=list)
    timestamp: datetime | None = None


class ResourceCost(CachePayload):
    name: str = ""
    resource_type: str = Field(default="", validation_alias=AliasChoices("type", "resource_type"))
    monthly_cost: float = 0.0
    hourly_cost: float = 0.0


class ProviderBilling(CachePayload):
    name: str = ""
    connected: bool = False
    error: str = ""
    month_to_date: float = 0.0
    balance: float = 0.0
    resources: list[ResourceCost] = Field(default_factory=list)


class BillingReport(CachePayload):
    """Cloud billing summary as written to ``billing.json``."""

    providers: list[ProviderBilling] = Field(default_factory=list)
    total_monthly_usd: float = 0.0
    budget_usd: float = 0.0
    budget_percent: float = 0.0
    timestamp: datetime | None = None


class MonthUsage(CachePayload):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0


class ModelUsage(CachePayload):
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class WorkspaceUsage(CachePayload):
    id: str = ""
    name: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class AccountUsage(CachePayload):
    name: str = ""
    organization_id: str = ""
    connected: bool = False
    error: str = ""
    current_month: MonthUsage = Field(default_factory=MonthUsage)
    previous_month: MonthUsage = Field(default_factory=MonthUsage)
    models: list[ModelUsage] = Field(default_factory=list)
    workspaces: list[WorkspaceUsage] = Field(default_factory=list)
    daily_burn_rate: float = 0.0
    projected_monthly: float = 0.0
    days_remaining: int = 0


class UsageReport(CachePayload):
    """API usage tracker output as written to ``claude.json``."""

    accounts: list[AccountUsage] = Field(default_factory=list)
    total_cost_usd: float = 0.0
    timestamp: datetime | None = None


class PersonalMessage(CachePayload):
    ts: str = ""
    model: str | None = None
    source: str = ""


class PersonalUsageState(CachePayload):
    """Rolling-window message log as written to ``claude-personal.json``."""

    messages: list[PersonalMessage] = Field(default_factory=list)
    window_hours: int = 5
    message_limit: int = 45
    last_scan: str = ""


@dataclass(slots=True, frozen=True)
class PersonalUsageReport:
    messages_in_window: int
    message_limit: int
    window_hours: int
    next_slot_secs: int  # 0 unless the window is full


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_personal_report(
    state: PersonalUsageState, now: datetime | None = None
) -> PersonalUsageReport:
    """Count messages inside the rolling window and when the next slot frees up.

    Unparseable timestamps are ignored.
    """
    now = now or datetime.now(timezone.utc)
    window = timedelta(hours=state.window_hours)
    cutoff = now - window

    in_window = sorted(
        ts
        for ts in (_parse_timestamp(m.ts) for m in state.messages)
        if ts is not None and ts > cutoff
    )

    next_slot = 0
    if in_window and len(in_window) >= state.message_limit:
        remaining = (in_window[0] + window) - now
        next_slot = max(0, int(remaining.total_seconds()))

    return PersonalUsageReport(
        messages_in_window=len(in_window),
        message_limit=state.message_limit,
        window_hours=state.window_hours,
        next_slot_secs=next_slot,
    )
