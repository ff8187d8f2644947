"""
Metering Gateway

Every paid generation passes through here:
- Identity verification (bearer JWT)
- Feature pricing from the admin-editable cost table
- Atomic check-and-deduct against the ledger store
- Provider invocation after the deduction commits
- Client-side balance mirror for responsive UIs
"""

from .costs import FeatureCostResolver, canonical_feature_name
from .identity import Identity, IdentityVerifier, encode_token
from .metering import MeteringGateway
from .mirror import ClientMirror
from .provider import GenerationProvider, GroqProvider
from .settings import DeploymentMode, Settings

__all__ = [
    "FeatureCostResolver",
    "canonical_feature_name",
    "Identity",
    "IdentityVerifier",
    "encode_token",
    "MeteringGateway",
    "ClientMirror",
    "GenerationProvider",
    "GroqProvider",
    "DeploymentMode",
    "Settings",
]
