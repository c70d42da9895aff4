"""Models package."""

from .user import User
from .account_balance import AccountBalance
from .credit_transaction import CreditTransaction
from .generation_task import GenerationTask
from .advisory_lock import AdvisoryLock
from .subscription import Subscription
from .processed_webhook_event import ProcessedWebhookEvent
from .daily_checkin import DailyCheckin
from .cron_execution import CronExecution
from .referral import Referral
