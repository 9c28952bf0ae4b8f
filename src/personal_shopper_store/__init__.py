"""Local personalization store and discovery-mixing engine for a shopping assistant."""

__version__ = "0.1.0"

from personal_shopper_store.errors import (
    ConstraintViolation,
    InvalidSetting,
    NotFound,
    SearchProviderError,
    StorageUnavailable,
    StoreError,
)
from personal_shopper_store.mixing import (
    DiscoveryMixer,
    FeatureVectorDiversity,
    MixingConfig,
    SignatureDiversity,
    outlier_count,
)
from personal_shopper_store.models import Candidate, LabeledCandidate, MessageInput, ProductInput
from personal_shopper_store.service import PersonalStoreService

__all__ = [
    "__version__",
    "Candidate",
    "ConstraintViolation",
    "DiscoveryMixer",
    "FeatureVectorDiversity",
    "InvalidSetting",
    "LabeledCandidate",
    "MessageInput",
    "MixingConfig",
    "NotFound",
    "PersonalStoreService",
    "ProductInput",
    "SearchProviderError",
    "SignatureDiversity",
    "StorageUnavailable",
    "StoreError",
    "outlier_count",
]
