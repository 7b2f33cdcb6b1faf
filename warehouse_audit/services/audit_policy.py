from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from warehouse_audit.config import settings


@dataclass(frozen=True)
class EntityAuditPolicy:
    enabled: bool
    retention_days: int


# Transactional ledgers are kept longest, catalog metadata shortest.
DEFAULT_ENTITY_POLICIES: dict[str, EntityAuditPolicy] = {
    'DeliveryBatch': EntityAuditPolicy(enabled=True, retention_days=730),
    'Delivery': EntityAuditPolicy(enabled=True, retention_days=730),
    'ReturnBatch': EntityAuditPolicy(enabled=True, retention_days=730),
    'ReturnItem': EntityAuditPolicy(enabled=True, retention_days=730),
    'StockMovement': EntityAuditPolicy(enabled=True, retention_days=365),
    'EppStock': EntityAuditPolicy(enabled=True, retention_days=365),
    'Epp': EntityAuditPolicy(enabled=True, retention_days=180),
    'Collaborator': EntityAuditPolicy(enabled=True, retention_days=180),
    'Warehouse': EntityAuditPolicy(enabled=True, retention_days=180),
    'Request': EntityAuditPolicy(enabled=True, retention_days=180),
    'Approval': EntityAuditPolicy(enabled=True, retention_days=180),
    'User': EntityAuditPolicy(enabled=False, retention_days=0),
    'SystemConfig': EntityAuditPolicy(enabled=False, retention_days=0),
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class RetentionPolicyTable:
    def __init__(
        self,
        policies: Mapping[str, EntityAuditPolicy] | None = None,
        *,
        retention_overrides: Mapping[str, int] | None = None,
        disabled: Iterable[str] = (),
    ) -> None:
        table = dict(DEFAULT_ENTITY_POLICIES if policies is None else policies)
        for entity_type, days in (retention_overrides or {}).items():
            if days < 0:
                raise ValueError(f'Retention for {entity_type} cannot be negative')
            current = table.get(entity_type, EntityAuditPolicy(enabled=True, retention_days=days))
            table[entity_type] = replace(current, retention_days=days)
        for entity_type in disabled:
            if entity_type in table:
                table[entity_type] = replace(table[entity_type], enabled=False)
        self._policies = table

    @classmethod
    def from_settings(cls) -> RetentionPolicyTable:
        return cls(
            retention_overrides=settings.audit_retention_overrides,
            disabled=settings.audit_disabled_entities,
        )

    def policy_for(self, entity_type: str) -> EntityAuditPolicy | None:
        return self._policies.get(entity_type)

    def is_auditable(self, entity_type: str) -> bool:
        policy = self.policy_for(entity_type)
        return policy.enabled if policy else False

    def retention_days(self, entity_type: str) -> int:
        policy = self.policy_for(entity_type)
        return policy.retention_days if policy else 0

    def expiry_of(self, entity_type: str, now: datetime | None = None) -> datetime:
        return (now or _now()) + timedelta(days=self.retention_days(entity_type))

    def describe(self) -> list[dict]:
        return [
            {
                'entity_type': entity_type,
                'enabled': policy.enabled,
                'retention_days': policy.retention_days,
            }
            for entity_type, policy in sorted(self._policies.items())
        ]
