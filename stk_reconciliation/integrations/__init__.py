"""External integrations: the Daraja API client and its callback handler."""
from .callback_handler import CallbackHandler
from .mpesa_client import DarajaClient, PushAck
from .result_codes import map_result_code

__all__ = ["CallbackHandler", "DarajaClient", "PushAck", "map_result_code"]
