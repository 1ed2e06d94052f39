"""Business services for payroll, transfers and fee abstraction."""

from dataclasses import dataclass

from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.providers.base import GatewayClients
from usdc_payroll.services.background import TaskSupervisor
from usdc_payroll.services.paymaster import PaymasterService
from usdc_payroll.services.payroll import PayrollService
from usdc_payroll.services.provisioning import ProvisioningService
from usdc_payroll.services.reconciliation import ReconciliationService
from usdc_payroll.services.sponsorship import GasStationService
from usdc_payroll.services.transfers import CrossChainTransferService
from usdc_payroll.services.workers import WorkerService


@dataclass(frozen=True)
class Services:
    """Every service, wired to one database and one set of gateway clients."""

    settings: Settings
    db: Database
    gateway: GatewayClients
    supervisor: TaskSupervisor
    reconciliation: ReconciliationService
    provisioning: ProvisioningService
    gas_station: GasStationService
    paymaster: PaymasterService
    transfers: CrossChainTransferService
    payroll: PayrollService
    workers: WorkerService


def build_services(settings: Settings, db: Database, gateway: GatewayClients) -> Services:
    reconciliation = ReconciliationService(db)
    provisioning = ProvisioningService(db, gateway)
    gas_station = GasStationService(db, gateway, reconciliation, settings)
    supervisor = TaskSupervisor()
    return Services(
        settings=settings,
        db=db,
        gateway=gateway,
        supervisor=supervisor,
        reconciliation=reconciliation,
        provisioning=provisioning,
        gas_station=gas_station,
        paymaster=PaymasterService(db, gateway, reconciliation, settings),
        transfers=CrossChainTransferService(db, gateway, reconciliation, settings),
        payroll=PayrollService(
            db, gateway, settings, provisioning=provisioning, gas_station=gas_station, supervisor=supervisor
        ),
        workers=WorkerService(db, gateway),
    )


__all__ = [
    "CrossChainTransferService",
    "GasStationService",
    "PaymasterService",
    "PayrollService",
    "ProvisioningService",
    "ReconciliationService",
    "Services",
    "TaskSupervisor",
    "WorkerService",
    "build_services",
]
