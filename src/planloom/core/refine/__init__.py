"""
Plan refinement: streaming conversation turns that yield reviewable
proposals, and the applier that commits accepted ones.
"""

from planloom.core.refine.applier import ProposalApplier
from planloom.core.refine.models import (
    ApplyReport,
    EntityDraft,
    Proposal,
    ProposalAction,
    ProposalResult,
    ProposalSnapshot,
    ProposalStatus,
    RefineTurn,
)
from planloom.core.refine.parser import ReplyBuffer, build_proposals, parse_updates
from planloom.core.refine.session import RefineEvent, RefineEventType, RefinementSession
from planloom.core.refine.targets import PlanLayout

__all__ = [
    "ApplyReport",
    "EntityDraft",
    "PlanLayout",
    "Proposal",
    "ProposalAction",
    "ProposalApplier",
    "ProposalResult",
    "ProposalSnapshot",
    "ProposalStatus",
    "RefineEvent",
    "RefineEventType",
    "RefineTurn",
    "RefinementSession",
    "ReplyBuffer",
    "build_proposals",
    "parse_updates",
]
