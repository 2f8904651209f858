from app.models.credential import UpstreamCredential
from app.models.proxy import OutboundProxy
from app.models.request_log import RequestLog
from app.models.task import GenerationTask

__all__ = [
    "GenerationTask",
    "OutboundProxy",
    "RequestLog",
    "UpstreamCredential",
]
