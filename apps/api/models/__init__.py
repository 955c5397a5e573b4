"""Models package."""

from .account import Account
from .credit_ledger import CreditLedgerEntry
from .onboarding_session import OnboardingSession
from .onboarding_draft import OnboardingDraft
from .generation_job import GenerationJob
