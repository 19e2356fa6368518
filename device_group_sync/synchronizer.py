"""
Target group synchronization.

Membership changes are planned once, then applied member by member: all
removals finish before the first addition, and a failure for one member never
stops the others.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Set

from device_group_sync.directories.base import DirectoryBase, DirectoryError, MemberAlreadyExistsError
from device_group_sync.models import DirectoryPrincipal, SyncPlan

logger = logging.getLogger(__name__)


class MemberOutcome(Enum):
    ADDED = 'Added'
    ALREADY_MEMBER = 'AlreadyMember'
    FAILED = 'Failed'
    REMOVED = 'Removed'
    REMOVE_FAILED = 'RemoveFailed'
    WOULD_ADD = 'WouldAdd'
    WOULD_REMOVE = 'WouldRemove'


@dataclass(frozen=True)
class MemberResult:
    principal: DirectoryPrincipal
    outcome: MemberOutcome
    message: str = ''


@dataclass
class SyncReport:
    """Per-member outcomes of one synchronization."""
    target_group_id: str
    dry_run: bool = False
    results: List[MemberResult] = field(default_factory=list)

    def record(self, principal: DirectoryPrincipal, outcome: MemberOutcome, message: str = ''):
        self.results.append(MemberResult(principal, outcome, message))

    def count(self, outcome: MemberOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    def counts(self) -> Dict[str, int]:
        return {outcome.value: self.count(outcome) for outcome in MemberOutcome}

    def principals(self, outcome: MemberOutcome) -> Set[DirectoryPrincipal]:
        return {result.principal for result in self.results if result.outcome is outcome}

    @property
    def failures(self) -> int:
        return self.count(MemberOutcome.FAILED) + self.count(MemberOutcome.REMOVE_FAILED)

    def failure_messages(self) -> List[str]:
        return [f"{result.outcome.value} {result.principal}: {result.message}"
                for result in self.results
                if result.outcome in (MemberOutcome.FAILED, MemberOutcome.REMOVE_FAILED)]


def _ordered(principals: Iterable[DirectoryPrincipal]) -> List[DirectoryPrincipal]:
    return sorted(principals, key=lambda p: (p.kind.value, p.display_name.lower(), p.id))


class GroupSynchronizer:
    """Applies a desired membership to a target group."""

    def __init__(self, directory: DirectoryBase):
        self.directory = directory

    def plan(self, target_group_id: str, desired_members: Iterable[DirectoryPrincipal],
             clear_first: bool = True) -> SyncPlan:
        """
        Compute membership changes.

        With clear_first every current member is removed and every desired
        member added. Otherwise desired members already in the group are left
        alone and only the missing ones are added.

        Raises:
            DirectoryError: If the target group's members cannot be read
        """
        desired = set(desired_members)
        current = set(self.directory.get_group_members(target_group_id))
        logger.info(f"Target group {target_group_id} has {len(current)} members, {len(desired)} desired")

        if clear_first:
            return SyncPlan(target_group_id=target_group_id, to_remove=current, to_add=desired)

        return SyncPlan(
            target_group_id=target_group_id,
            to_add=desired - current,
            already_present=desired & current
        )

    def apply(self, plan: SyncPlan, dry_run: bool = False) -> SyncReport:
        """Apply a plan. Never raises for individual member failures."""
        report = SyncReport(target_group_id=plan.target_group_id, dry_run=dry_run)
        self.apply_removals(plan, report)
        self.apply_additions(plan, report)
        return report

    def apply_removals(self, plan: SyncPlan, report: SyncReport):
        """Remove every member scheduled for removal, recording outcomes in the report."""
        group_id = plan.target_group_id
        dry_run = report.dry_run

        for principal in _ordered(plan.to_remove):
            if dry_run:
                logger.info(f"[DRY RUN] Would remove {principal} from {group_id}")
                report.record(principal, MemberOutcome.WOULD_REMOVE)
                continue
            try:
                self.directory.remove_group_member(group_id, principal.id)
            except DirectoryError as e:
                logger.error(f"Failed to remove {principal} from {group_id}: {e}")
                report.record(principal, MemberOutcome.REMOVE_FAILED, str(e))
            else:
                logger.info(f"Removed {principal} from {group_id}")
                report.record(principal, MemberOutcome.REMOVED)

    def apply_additions(self, plan: SyncPlan, report: SyncReport):
        """Add every missing member, recording outcomes in the report."""
        group_id = plan.target_group_id
        dry_run = report.dry_run

        for principal in _ordered(plan.already_present):
            logger.info(f"{principal} is already a member of {group_id}")
            report.record(principal, MemberOutcome.ALREADY_MEMBER)

        for principal in _ordered(plan.to_add):
            if dry_run:
                logger.info(f"[DRY RUN] Would add {principal} to {group_id}")
                report.record(principal, MemberOutcome.WOULD_ADD)
                continue
            try:
                self.directory.add_group_member(group_id, principal.id)
            except MemberAlreadyExistsError:
                logger.info(f"{principal} is already a member of {group_id}")
                report.record(principal, MemberOutcome.ALREADY_MEMBER)
            except DirectoryError as e:
                logger.error(f"Failed to add {principal} to {group_id}: {e}")
                report.record(principal, MemberOutcome.FAILED, str(e))
            else:
                logger.info(f"Added {principal} to {group_id}")
                report.record(principal, MemberOutcome.ADDED)

    def sync(self, target_group_id: str, desired_members: Iterable[DirectoryPrincipal],
             clear_first: bool = True, dry_run: bool = False) -> SyncReport:
        """Plan and apply in one step."""
        plan = self.plan(target_group_id, desired_members, clear_first)
        return self.apply(plan, dry_run)
