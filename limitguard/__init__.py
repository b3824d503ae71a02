__version__ = "0.1.0"

from limitguard.client import ApiClient, ClientBuilder
from limitguard.http.handlers import AbuseLimitHandler, RateLimitHandler

__all__ = ["AbuseLimitHandler", "ApiClient", "ClientBuilder", "RateLimitHandler", "__version__"]
