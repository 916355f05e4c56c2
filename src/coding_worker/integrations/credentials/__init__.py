from .client import CredentialGateway

__all__ = ["CredentialGateway"]
