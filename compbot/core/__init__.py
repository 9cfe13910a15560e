# Core package - centralized exports
# - configurations.py: Config, VerificationSettings, GuildSettingsService
# - db.py: Database class and schema
# - records.py: VerificationRecord, RecordStore
# - extractor.py: StatsExtractor, OpenAIVision
# - eligibility.py: EligibilityEvaluator
# - approvals.py: ApprovalRegistry
# - roles.py: RoleGrantCoordinator
# - resolver.py: ConflictResolver
# - sweeps.py: ReverifySweep

# Configurations
from .configurations import Config, VerificationSettings, GuildSettingsService

# Database
from .db import Database

# Verification core
from .records import VerificationRecord, RecordStore, DuplicateTagError
from .extractor import StatsExtractor, OpenAIVision, NormalizedStats, ExtractionFailure, VisionUnavailable
from .eligibility import EligibilityEvaluator, Evaluation
from .approvals import ApprovalRegistry, PendingApproval
from .roles import RoleGrantCoordinator, Outcome
from .resolver import (
    ConflictResolver, Submission, SubmissionResult, SubmissionState, ResolutionResult, ResolutionState
)
from .sweeps import ReverifySweep

__all__ = [
    # Configurations
    'Config', 'VerificationSettings', 'GuildSettingsService',
    # Database
    'Database',
    # Verification core
    'VerificationRecord', 'RecordStore', 'DuplicateTagError',
    'StatsExtractor', 'OpenAIVision', 'NormalizedStats', 'ExtractionFailure', 'VisionUnavailable',
    'EligibilityEvaluator', 'Evaluation',
    'ApprovalRegistry', 'PendingApproval',
    'RoleGrantCoordinator', 'Outcome',
    'ConflictResolver', 'Submission', 'SubmissionResult', 'SubmissionState', 'ResolutionResult', 'ResolutionState',
    'ReverifySweep',
]
