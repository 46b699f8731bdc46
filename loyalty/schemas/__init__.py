from loyalty.schemas.base import (  # noqa: F401
    AIDetectionResult,
    AmountBelowMinimum,
    FieldValidation,
    FraudScore,
    ParsedReceipt,
    ReceiptTooOld,
    RejectionDetail,
    RewardStatus,
    RewardSummary,
    RuleSettings,
    RuleSettingsUpdate,
    StoreCandidate,
    TamperingResult,
    TinMismatch,
    TinNotAllowed,
    TinNotFound,
    ValidationFailure,
    ValidationResult,
    ValidationRules,
)
from loyalty.schemas.api import (  # noqa: F401
    CustomerSummary,
    LinkStoreRequest,
    ManualReviewRequest,
    ReceiptDetails,
    ReviewRequest,
    RewardActionResponse,
)
