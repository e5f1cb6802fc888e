from settlement.schemas.base import *  # noqa: F401,F403
from settlement.schemas.reconciliation import *  # noqa: F401,F403
