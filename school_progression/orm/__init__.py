from .base import Base

from .school import School
from .evidence_requirement import EvidenceRequirement, ProgramStage, STAGE_ORDER
from .evidence import Evidence, EvidenceStatus, EvidenceVisibility
from .evidence_override import AdminEvidenceOverride
from .school_progression import SchoolProgression
from .progression_signal import ProgressionSignalRecord, SignalType
