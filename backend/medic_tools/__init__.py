from .core_tools import MedicToolset, register_tools
from .gateway import DomainGateway, HttpDomainGateway
from .normalizer import canonical_day_of_week, normalize_day_of_week, normalize_specialty

__all__ = [
    "DomainGateway",
    "HttpDomainGateway",
    "MedicToolset",
    "canonical_day_of_week",
    "normalize_day_of_week",
    "normalize_specialty",
    "register_tools",
]
