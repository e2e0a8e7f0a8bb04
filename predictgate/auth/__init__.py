from .access_codes import AccessCodeService
from .api_keys import ApiKeyService, create_hmac_signature, validate_hmac_signature

__all__ = ["AccessCodeService", "ApiKeyService", "create_hmac_signature", "validate_hmac_signature"]
