from .crash import CrashDetectionMetadata, CrashDetector, CrashHistory
from .update_safety import UpdateCoordinator, UpdatePhase, UpdateSafetyResult
