"""
Component wiring and request dependencies
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..allocation import InstallmentAllocator, LoanLockManager
from ..audit import AuditTrail
from ..config import EngineConfig, get_config
from ..currency import Currency
from ..errors import EngineError
from ..customers import CustomerDirectory
from ..ingest import PaymentEventStore, SuspenseRegistry, TransactionIngest
from ..jobs import PaymentQueue
from ..ledger import ChartOfAccounts, LedgerPoster
from ..loans import LoanBook
from ..processor import PaymentProcessor
from ..reconciliation import ReconciliationRecorder
from ..statements import BankStatementImporter
from ..storage import StorageInterface, create_storage
from ..tenancy import TenantManager, TenantResolver
from ..wallet import CustomerWallet
from ..worker import WorkerPool


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(self, config: Optional[EngineConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.sqlite_path)
        country_code = self.config.default_country_code

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.tenant_manager = TenantManager(self.storage)
        self.customers = CustomerDirectory(self.storage, country_code)
        self.resolver = TenantResolver(self.tenant_manager, self.customers, country_code)
        self.loan_book = LoanBook(self.storage, self.audit_trail)
        self.lock_manager = LoanLockManager()
        self.allocator = InstallmentAllocator(self.loan_book, self.lock_manager)
        self.recorder = ReconciliationRecorder(self.storage)
        self.wallet = CustomerWallet(self.storage)
        self.chart = ChartOfAccounts(self.storage)
        self.ledger = LedgerPoster(self.storage, self.chart, self.audit_trail,
                                   default_currency=Currency[self.config.default_currency])

        self.queue = PaymentQueue(
            self.storage, self.audit_trail,
            max_attempts=self.config.job_max_attempts,
            retry_backoff_seconds=self.config.job_retry_backoff_seconds,
            stuck_job_minutes=self.config.stuck_job_minutes
        )
        self.events = PaymentEventStore(self.storage)
        self.suspense = SuspenseRegistry(self.storage, self.events, self.audit_trail)
        self.ingest = TransactionIngest(self.storage, self.resolver, self.queue,
                                        self.events, self.suspense, self.audit_trail)
        self.processor = PaymentProcessor(
            self.storage, self.events, self.suspense, self.customers,
            self.loan_book, self.allocator, self.recorder, self.wallet,
            self.ledger, self.tenant_manager, self.config, self.audit_trail
        )
        self.statements = BankStatementImporter(self.ingest, self.processor,
                                                country_code, self.config.default_currency)
        self.worker_pool = WorkerPool(
            self.queue, self.processor,
            concurrency=self.config.worker_concurrency,
            poll_interval=self.config.worker_poll_interval_seconds,
            recovery_interval=self.config.recovery_sweep_interval_seconds,
            stuck_minutes=self.config.stuck_job_minutes
        )

    def close(self) -> None:
        self.worker_pool.stop()
        self.storage.close()


def get_lending_system(request: Request) -> LendingSystem:
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="Lending system not initialized")
    return system


def require_tenant(
    request: Request,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")
) -> str:
    """Tenant the caller acts for; must exist"""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    system = get_lending_system(request)
    tenant = system.tenant_manager.get_tenant(x_tenant_id)
    if tenant is None or not tenant.is_active:
        raise HTTPException(status_code=404, detail=f"Tenant {x_tenant_id} not found")
    return tenant.id


def to_http_error(error: ValueError) -> HTTPException:
    """Engine errors become 422 with their code; other validation errors 400"""
    if isinstance(error, EngineError):
        return HTTPException(status_code=422, detail={"code": error.code, "message": str(error)})
    return HTTPException(status_code=400, detail=str(error))
