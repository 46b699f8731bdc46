from loyalty.models.customer import (  # noqa: F401
    ACTIVE_REWARD_STATUSES,
    REWARD_STATUSES,
    CustomerModel,
    RewardModel,
    VisitModel,
)
from loyalty.models.receipt import RECEIPT_STATUSES, ReceiptModel  # noqa: F401
from loyalty.models.store import StoreModel  # noqa: F401
from loyalty.models.system_settings import (  # noqa: F401
    SYSTEM_SETTINGS_ID,
    SystemSettingsLogModel,
    SystemSettingsModel,
)
