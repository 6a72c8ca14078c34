from .channels import EmailSender, SendResult, TelegramSender, build_senders
from .digest import Digest, render_digest
from .dispatcher import DeliveryReport, Dispatcher

__all__ = [
    "DeliveryReport",
    "Digest",
    "Dispatcher",
    "EmailSender",
    "SendResult",
    "TelegramSender",
    "build_senders",
    "render_digest",
]
