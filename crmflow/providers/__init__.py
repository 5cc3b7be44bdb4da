"""
CrmFlow Providers - implementations of the collaborator protocols

- PostgresCrmGateway: entity reads and CRM side effects over Postgres
- HttpMailSender: mail delivery through an HTTP relay
- HttpWebhookSender: outbound webhook POSTs
- Memory*: in-memory collaborators for tests and local runs
"""

from .crm import PostgresCrmGateway
from .memory import MemoryCrmGateway, MemoryMailSender, MemoryWebhookSender
from .relay import HttpMailSender
from .webhook import HttpWebhookSender, validate_webhook_url

__all__ = [
    "PostgresCrmGateway",
    "HttpMailSender",
    "HttpWebhookSender",
    "validate_webhook_url",
    "MemoryCrmGateway",
    "MemoryMailSender",
    "MemoryWebhookSender",
]
