"""
Montagem dos servicos de NF-e sobre um conjunto de repositorios

Usado pela API, pelo lifespan (worker automatico) e pelo process_queue.py.
A cadeia de auditoria e compartilhada para que o lock por cadeia valha
entre requisicoes do mesmo processo.
"""
import asyncio
from datetime import timedelta
from typing import Callable, Optional

from nfe_server.core.config import Settings, settings as default_settings
from nfe_server.core.error_notifier import notify_error_sync
from nfe_server.services.audit import AuditChain
from nfe_server.services.certificate import load_company_credentials
from nfe_server.services.contingency import ContingencyQueue
from nfe_server.services.fiscal_events import FiscalEventService
from nfe_server.services.orchestrator import EmissionOrchestrator
from nfe_server.services.transport import create_transport
from nfe_server.services.worker import ContingencyWorker


class NFeServices:
    def __init__(
        self,
        stores,
        transport_factory: Callable = create_transport,
        credentials_loader: Callable = load_company_credentials,
        config: Optional[Settings] = None,
        sleep: Callable = asyncio.sleep,
        notifier: Callable = notify_error_sync,
    ):
        self.stores = stores
        self.config = config or default_settings
        self.audit = AuditChain(stores.audit)
        self.queue = ContingencyQueue(
            stores.queue, timedelta(minutes=self.config.NFE_QUEUE_SENDING_LEASE_MINUTES)
        )

        self.orchestrator = EmissionOrchestrator(
            stores.companies,
            stores.documents,
            self.audit,
            self.queue,
            transport_factory=transport_factory,
            credentials_loader=credentials_loader,
            config=self.config,
            sleep=sleep,
            notifier=notifier,
        )
        self.worker = ContingencyWorker(
            stores.companies,
            stores.documents,
            self.queue,
            self.audit,
            transport_factory=transport_factory,
            credentials_loader=credentials_loader,
            config=self.config,
            sleep=sleep,
            notifier=notifier,
        )
        self.events = FiscalEventService(
            stores.companies,
            stores.documents,
            self.audit,
            transport_factory=transport_factory,
            credentials_loader=credentials_loader,
            config=self.config,
        )
