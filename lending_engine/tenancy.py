"""
Multi-Tenancy Support Module

Each lending organization is a tenant with its own gateway (M-Pesa paybill,
till or shortcode) configuration, chart of accounts, customers and loans.
Inbound payments carry no tenant id, so ``TenantResolver`` works out which
tenant a payment belongs to from the gateway routing key or, failing that,
the payer's phone number.
"""

import contextvars
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from .errors import DuplicateRecordError
from .normalize import phone_variants
from .storage import StorageInterface, StorageRecord, parse_datetime

logger = logging.getLogger("lending_engine.tenancy")


@dataclass
class Tenant:
    """Tenant data class representing a lending organization"""
    id: str
    name: str
    code: str  # Unique short code, e.g., "ACME_CREDIT"
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    settings: Dict[str, Any] = field(default_factory=dict)  # Tenant-specific config overrides

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'settings': self.settings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tenant':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


@dataclass
class GatewayConfig(StorageRecord):
    """Per-tenant mobile money gateway configuration"""
    tenant_id: str
    paybill_number: Optional[str] = None
    till_number: Optional[str] = None
    shortcode: Optional[str] = None
    environment: str = "sandbox"
    is_active: bool = True
    credential_ref: Optional[str] = None  # Secret store key, never the secret itself

    @property
    def routing_keys(self) -> List[str]:
        return [k for k in (self.paybill_number, self.till_number, self.shortcode) if k]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GatewayConfig':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


@dataclass
class TenantResolution:
    """Outcome of resolving an inbound payment to a tenant"""
    tenant_id: str
    gateway_config: GatewayConfig
    customer_id: Optional[str] = None
    matched_by: str = "routing_key"  # routing_key or phone


# Context-local tenant used for log correlation
_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: Optional[str]) -> None:
    _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: Optional[str]):
    """Context manager for temporary tenant switching"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


class TenantManager:
    """Manager for tenants and their gateway configurations"""

    TENANT_TABLE = "tenants"
    GATEWAY_TABLE = "gateway_configs"
    ROUTING_KEY_TABLE = "gateway_routing_keys"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_tenant(self, name: str, code: str,
                      settings: Optional[Dict[str, Any]] = None,
                      tenant_id: Optional[str] = None) -> Tenant:
        """Create a new tenant"""
        if not tenant_id:
            tenant_id = str(uuid.uuid4())

        if self.get_tenant_by_code(code):
            raise ValueError(f"Tenant code '{code}' already exists")

        tenant = Tenant(id=tenant_id, name=name, code=code, settings=settings or {})
        self.storage.insert(self.TENANT_TABLE, tenant.id, tenant.to_dict())
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        data = self.storage.load(self.TENANT_TABLE, tenant_id)
        if data:
            return Tenant.from_dict(data)
        return None

    def get_tenant_by_code(self, code: str) -> Optional[Tenant]:
        tenants = self.storage.find(self.TENANT_TABLE, {'code': code})
        if tenants:
            return Tenant.from_dict(tenants[0])
        return None

    def list_tenants(self, is_active: Optional[bool] = None) -> List[Tenant]:
        """List all tenants, optionally filtered by active status"""
        filters = {}
        if is_active is not None:
            filters['is_active'] = is_active
        return [Tenant.from_dict(data) for data in self.storage.find(self.TENANT_TABLE, filters)]

    def register_gateway(self, tenant_id: str,
                         paybill_number: Optional[str] = None,
                         till_number: Optional[str] = None,
                         shortcode: Optional[str] = None,
                         environment: str = "sandbox",
                         credential_ref: Optional[str] = None) -> GatewayConfig:
        """
        Register a gateway configuration for a tenant.

        Routing keys are unique across all tenants: a payment carrying a
        routing key must identify exactly one tenant.

        Raises:
            ValueError: Unknown tenant, no routing key, or a routing key
                already registered
        """
        if not self.get_tenant(tenant_id):
            raise ValueError(f"Tenant {tenant_id} not found")

        now = datetime.now(timezone.utc)
        gateway = GatewayConfig(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            paybill_number=paybill_number,
            till_number=till_number,
            shortcode=shortcode,
            environment=environment,
            credential_ref=credential_ref
        )
        keys = gateway.routing_keys
        if not keys:
            raise ValueError("Gateway configuration needs a paybill, till or shortcode")
        if len(set(keys)) != len(keys):
            raise ValueError("Routing keys within one gateway configuration must differ")

        try:
            with self.storage.atomic():
                for key in keys:
                    self.storage.insert(self.ROUTING_KEY_TABLE, key, {
                        'routing_key': key,
                        'tenant_id': tenant_id,
                        'gateway_id': gateway.id
                    })
                self.storage.insert(self.GATEWAY_TABLE, gateway.id, gateway.to_dict())
        except DuplicateRecordError as e:
            raise ValueError(f"Routing key {e.record_id} is already registered") from e

        logger.info(f"Registered gateway {gateway.id} for tenant {tenant_id}",
                    extra={'tenant_id': tenant_id, 'action': 'register_gateway'})
        return gateway

    def get_gateway(self, gateway_id: str) -> Optional[GatewayConfig]:
        data = self.storage.load(self.GATEWAY_TABLE, gateway_id)
        return GatewayConfig.from_dict(data) if data else None

    def find_gateway_by_routing_key(self, routing_key: str) -> Optional[GatewayConfig]:
        """Active gateway configuration owning a paybill, till or shortcode"""
        link = self.storage.load(self.ROUTING_KEY_TABLE, str(routing_key).strip())
        if not link:
            return None
        gateway = self.get_gateway(link['gateway_id'])
        if gateway and gateway.is_active:
            return gateway
        return None

    def get_active_gateway(self, tenant_id: str) -> Optional[GatewayConfig]:
        gateways = self.storage.find(self.GATEWAY_TABLE, {'tenant_id': tenant_id, 'is_active': True})
        if not gateways:
            return None
        gateways.sort(key=lambda g: g['created_at'])
        return GatewayConfig.from_dict(gateways[0])

    def deactivate_gateway(self, gateway_id: str) -> bool:
        updated = self.storage.update_where(
            self.GATEWAY_TABLE, gateway_id, {'is_active': True},
            {'is_active': False, 'updated_at': datetime.now(timezone.utc).isoformat()}
        )
        return updated is not None


class TenantResolver:
    """
    Works out which tenant an inbound payment belongs to.

    Resolution order: the gateway routing key (exact match on an active
    configuration), then the payer phone. Phone resolution succeeds only
    when exactly one customer owns any variant of the number and that
    customer's tenant has an active gateway. Ambiguity is never guessed.
    """

    def __init__(self, tenant_manager: TenantManager, customer_directory,
                 country_code: str = "254"):
        self.tenant_manager = tenant_manager
        self.customer_directory = customer_directory
        self.country_code = country_code

    def resolve_by_routing_key(self, routing_key: Optional[str]) -> Optional[TenantResolution]:
        if not routing_key:
            return None
        gateway = self.tenant_manager.find_gateway_by_routing_key(routing_key)
        if gateway is None:
            return None
        return TenantResolution(tenant_id=gateway.tenant_id, gateway_config=gateway,
                                matched_by="routing_key")

    def resolve_by_phone(self, payer_phone: Optional[str]) -> Optional[TenantResolution]:
        if not phone_variants(payer_phone, self.country_code):
            return None

        customers = self.customer_directory.find_by_phone(payer_phone)
        distinct = {c.id: c for c in customers}
        if len(distinct) != 1:
            if len(distinct) > 1:
                logger.warning(
                    f"Phone {payer_phone} matches {len(distinct)} customers, not resolving",
                    extra={'action': 'resolve_tenant'}
                )
            return None

        customer = next(iter(distinct.values()))
        gateway = self.tenant_manager.get_active_gateway(customer.tenant_id)
        if gateway is None:
            return None
        return TenantResolution(tenant_id=customer.tenant_id, gateway_config=gateway,
                                customer_id=customer.id, matched_by="phone")

    def resolve(self, routing_key: Optional[str],
                payer_phone: Optional[str]) -> Optional[TenantResolution]:
        """Resolve a payment to a tenant, or None when unresolved"""
        resolution = self.resolve_by_routing_key(routing_key)
        if resolution is None:
            if routing_key:
                logger.warning(f"Routing key {routing_key} not matched, trying phone fallback",
                               extra={'action': 'resolve_tenant'})
            resolution = self.resolve_by_phone(payer_phone)

        if resolution is None:
            logger.warning(f"Could not resolve tenant for routing key {routing_key} phone {payer_phone}",
                           extra={'action': 'resolve_tenant'})
        return resolution
