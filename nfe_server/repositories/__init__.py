"""
NF-e Server - Repositories
"""
from nfe_server.repositories.base import AuditStore, CompanyStore, DocumentStore, QueueStore
from nfe_server.repositories.memory import MemoryStores
from nfe_server.repositories.sql import SqlStores

__all__ = [
    "AuditStore",
    "CompanyStore",
    "DocumentStore",
    "QueueStore",
    "MemoryStores",
    "SqlStores",
]
