"""
Main orchestrator for Device Group Sync.

This module runs one synchronization: it connects to the directory, resolves
the matching devices from the source groups, derives the desired members of
the target group and applies them, then reports the outcome.
"""

import sys
import copy
import json
import logging
import argparse
import importlib
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from device_group_sync.config import load_config, validate_sync_settings, ConfigurationError, SUPPORTED_PLATFORMS
from device_group_sync.device_filter import DeviceFilter, build_filters
from device_group_sync.directories.base import DirectoryBase, DirectoryAuthenticationError, DirectoryError
from device_group_sync.identity import BatchIdentityLookup
from device_group_sync.logging_setup import setup_logging
from device_group_sync.models import AddMode, MatchedDevice
from device_group_sync.notifications import send_failure_notification, send_run_summary, send_test_notification
from device_group_sync.resolver import Resolver, RunCache, build_desired_members
from device_group_sync.synchronizer import GroupSynchronizer, MemberOutcome, SyncReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_MEMBER_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_AUTHENTICATION_ERROR = 3
EXIT_TARGET_NOT_FOUND = 4
EXIT_UNEXPECTED_ERROR = 5


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class TargetGroupNotFoundError(SyncError):
    """Raised when the requested target group does not exist."""
    pass


class RunState(Enum):
    INIT = 'Init'
    AUTHENTICATED = 'Authenticated'
    RESOLVED = 'Resolved'
    CLEARED = 'Cleared'
    SYNCED = 'Synced'
    REPORTED = 'Reported'


def apply_overrides(sync_config: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge command line overrides into the sync section.

    Platform filters are merged per platform, so `--ios-operator` alone keeps
    the configured iOS minimum version.
    """
    merged = copy.deepcopy(sync_config or {})
    for key, value in (overrides or {}).items():
        if key == 'filters':
            filters = merged.setdefault('filters', {}) or {}
            for platform, settings in value.items():
                platform_filter = dict(filters.get(platform) or {})
                platform_filter.update(settings)
                filters[platform] = platform_filter
            merged['filters'] = filters
        else:
            merged[key] = value
    return merged


class SyncOrchestrator:
    """
    Main orchestrator for one device group synchronization run.

    Every run gets fresh caches; the directory session is always torn down,
    whatever the exit reason.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Sync settings from the command line
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.directory: Optional[DirectoryBase] = None
        self.state = RunState.INIT
        self.state_history: List[RunState] = []

        self.run_stats = {}
        self.matches: List[MatchedDevice] = []
        self.match_lines: List[str] = []
        self.report: Optional[SyncReport] = None
        self.resolver: Optional[Resolver] = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.state = RunState.INIT
        self.state_history = []
        self.run_stats = {
            'start_time': datetime.now(),
            'end_time': None,
            'runtime_seconds': 0,
            'source_groups': [],
            'target_group': None,
            'dry_run': False,
            'matched_devices': 0,
            'desired_members': 0,
            'outcomes': {},
            'warnings': 0
        }

        try:
            self._load_configuration()
            self._setup_logging()

            logger.info("Starting Device Group Sync")

            sync_config = self.config['sync']
            device_filter = DeviceFilter(build_filters(sync_config.get('filters')))
            add_mode = AddMode.parse(sync_config.get('add_mode', 'Users'))

            self._connect_directory()
            self._set_state(RunState.AUTHENTICATED)

            target_group_id = self._resolve_target_group()

            run_cache = RunCache()
            self.matches = self._resolve_matches(device_filter, run_cache)
            self._set_state(RunState.RESOLVED)

            identity_lookup = BatchIdentityLookup(
                self.directory,
                batch_size=sync_config.get('batch_size', 15),
                users=run_cache.users,
                devices=run_cache.devices
            )
            desired = build_desired_members(self.matches, add_mode, identity_lookup)
            self.run_stats['desired_members'] = len(desired)
            self._log_matches(run_cache)

            if target_group_id:
                self.report = self._synchronize(target_group_id, desired)
                self.run_stats['outcomes'] = self.report.counts()
            else:
                logger.info("No target group configured, reporting matches only")

            self.run_stats['end_time'] = datetime.now()
            self.run_stats['runtime_seconds'] = (
                self.run_stats['end_time'] - self.run_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            self._set_state(RunState.REPORTED)
            self._send_summary_notification()

            return self._exit_code()

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except DirectoryAuthenticationError as e:
            logger.error(f"Directory authentication failed: {e}")
            self._send_failure_notification("Directory Authentication Failed", str(e))
            return EXIT_AUTHENTICATION_ERROR
        except TargetGroupNotFoundError as e:
            logger.error(str(e))
            self._send_failure_notification("Target Group Not Found", str(e))
            return EXIT_TARGET_NOT_FOUND
        except Exception as e:
            logger.error(f"Unexpected error in state {self.state.value}: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _set_state(self, state: RunState):
        logger.debug(f"Run state: {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def _load_configuration(self):
        """Load configuration and merge command line overrides."""
        self.config = load_config(self.config_path)
        self.config['sync'] = apply_overrides(self.config.get('sync'), self.overrides)

        errors = validate_sync_settings(self.config['sync'])
        if errors:
            raise ConfigurationError("Invalid sync settings:\n" + "\n".join(f"  - {error}" for error in errors))

        sync_config = self.config['sync']
        self.run_stats['source_groups'] = list(sync_config.get('source_groups') or [])
        self.run_stats['target_group'] = sync_config.get('target_group_id') or sync_config.get('target_group')
        self.run_stats['dry_run'] = bool(sync_config.get('dry_run'))

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _load_directory_module(self, directory_config: Dict[str, Any]) -> DirectoryBase:
        """Dynamically load the directory backend and create its instance."""
        module_name = directory_config.get('module', 'graph')

        try:
            directory_module = importlib.import_module(f"device_group_sync.directories.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import directory module {module_name}: {e}")

        directory_class = None
        for attr_name in dir(directory_module):
            attr = getattr(directory_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, DirectoryBase) and
                    attr is not DirectoryBase):
                directory_class = attr
                break

        if not directory_class:
            raise ConfigurationError(f"No DirectoryBase subclass found in module {module_name}")

        backend_config = dict(directory_config)
        backend_config['error_handling'] = self.config.get('error_handling', {})
        return directory_class(backend_config)

    def _connect_directory(self):
        """Create the directory backend and establish the session."""
        self.directory = self._load_directory_module(self.config['directory'])
        self.directory.connect()
        logger.info(f"Connected to directory {self.directory.name}")

    def _resolve_target_group(self) -> Optional[str]:
        """
        Look up the target group.

        Raises:
            TargetGroupNotFoundError: If a target was requested but does not exist
        """
        sync_config = self.config['sync']
        if sync_config.get('target_group_id'):
            return sync_config['target_group_id']

        target_name = sync_config.get('target_group')
        if not target_name:
            return None

        group_id = self.directory.get_group_by_name(target_name)
        if not group_id:
            raise TargetGroupNotFoundError(f"Target group '{target_name}' not found")

        logger.info(f"Target group '{target_name}' resolved to {group_id}")
        return group_id

    def _resolve_matches(self, device_filter: DeviceFilter, run_cache: RunCache) -> List[MatchedDevice]:
        sync_config = self.config['sync']
        self.resolver = Resolver(
            self.directory,
            device_filter,
            run_cache=run_cache,
            limit=sync_config.get('limit') or None
        )
        matches = self.resolver.resolve(sync_config.get('source_groups') or [])
        self.run_stats['matched_devices'] = len(matches)
        self.run_stats['warnings'] = len(self.resolver.warnings)
        return matches

    def _synchronize(self, target_group_id: str, desired) -> SyncReport:
        sync_config = self.config['sync']
        clear_first = bool(sync_config.get('clear_first', True))
        dry_run = bool(sync_config.get('dry_run', False))

        synchronizer = GroupSynchronizer(self.directory)
        try:
            plan = synchronizer.plan(target_group_id, desired, clear_first=clear_first)
        except DirectoryError as e:
            raise TargetGroupNotFoundError(f"Cannot read target group {target_group_id}: {e}")

        logger.info(f"Sync plan for {target_group_id}: {len(plan.to_remove)} to remove, "
                    f"{len(plan.to_add)} to add, {len(plan.already_present)} already present"
                    + (" (dry run)" if dry_run else ""))

        report = SyncReport(target_group_id=target_group_id, dry_run=dry_run)
        synchronizer.apply_removals(plan, report)
        if clear_first:
            self._set_state(RunState.CLEARED)
        synchronizer.apply_additions(plan, report)
        self._set_state(RunState.SYNCED)
        return report

    def _owner_label(self, owner_id: Optional[str], users: Dict[str, Any]) -> str:
        if not owner_id:
            return 'no owner'
        record = users.get(owner_id)
        return record.user_principal_name or record.display_name if record else 'Unknown'

    def _match_lines(self, users: Dict[str, Any]) -> List[str]:
        return [f"{m.name} | {m.os.value} {m.version} | {self._owner_label(m.owner_user_id, users)}"
                for m in self.matches]

    def _log_matches(self, run_cache: RunCache):
        self.match_lines = self._match_lines(run_cache.users)
        for line in self.match_lines:
            logger.info(f"Device: {line}")

    def _exit_code(self) -> int:
        failures = self.report.failures if self.report else 0
        if failures and self.config['sync'].get('fail_on_member_errors'):
            logger.warning(f"Sync completed with {failures} failed member operations")
            return EXIT_MEMBER_FAILURES
        if failures:
            logger.warning(f"Sync completed with {failures} failed member operations "
                           f"(not reflected in exit code, see fail_on_member_errors)")
        else:
            logger.info("Sync completed successfully")
        return EXIT_OK

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        notifications_config = self.config.get('notifications', {})
        send_failure_notification(title, error_message, notifications_config, {
            'Run State': self.state.value,
            'Target Group': self.run_stats.get('target_group') or 'none'
        })

    def _send_summary_notification(self):
        notifications_config = self.config.get('notifications', {})
        failures = self.report.failure_messages() if self.report else []
        send_run_summary(self.run_stats, self.match_lines, failures, notifications_config)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.run_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Source groups: {', '.join(stats['source_groups']) or 'org-wide'}")

        if self.resolver:
            for group_name, group_stats in self.resolver.group_stats.items():
                logger.info(f"  {group_name}: {group_stats['devices']} devices, {group_stats['users']} users, "
                            f"{group_stats['matched']} matched")

        logger.info(f"Matched devices: {stats['matched_devices']}")
        logger.info(f"Desired members: {stats['desired_members']}")
        logger.info(f"Warnings: {stats['warnings']}")

        if self.report:
            mode = " (dry run)" if self.report.dry_run else ""
            logger.info(f"Target group: {stats['target_group']}{mode}")
            counts = self.report.counts()
            logger.info(", ".join(f"{outcome.value}: {counts[outcome.value]}" for outcome in (
                MemberOutcome.ADDED, MemberOutcome.ALREADY_MEMBER, MemberOutcome.FAILED, MemberOutcome.REMOVED)))
            if self.report.dry_run:
                logger.info(f"WouldRemove: {counts[MemberOutcome.WOULD_REMOVE.value]}, "
                            f"WouldAdd: {counts[MemberOutcome.WOULD_ADD.value]}")
            if counts[MemberOutcome.REMOVE_FAILED.value]:
                logger.info(f"RemoveFailed: {counts[MemberOutcome.REMOVE_FAILED.value]}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._connect_directory()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f'Connected to {self.directory.name}'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            self._cleanup()

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Tear down the directory session."""
        if self.directory:
            try:
                self.directory.disconnect()
            except Exception as e:
                logger.warning(f"Error during directory disconnect: {e}")
            finally:
                self.directory = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Synchronize a directory group with the owners or devices matching OS version filters')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--source-group', action='append', dest='source_groups', metavar='NAME',
                        help='Source group name (repeatable; omit for the whole inventory)')
    for platform in SUPPORTED_PLATFORMS:
        flag = platform.lower()
        parser.add_argument(f'--{flag}-version', metavar='VERSION',
                            help=f'{platform} version to compare against')
        parser.add_argument(f'--{flag}-operator', choices=['eq', 'ne', 'lt', 'le', 'gt', 'ge'],
                            help=f'{platform} comparison operator (default lt)')
    parser.add_argument('--target-group', metavar='NAME', help='Target group name')
    parser.add_argument('--target-group-id', metavar='ID', help='Target group id')
    parser.add_argument('--add-mode', choices=['Users', 'Devices', 'Both'],
                        help='What to add to the target group')
    parser.add_argument('--no-clear', action='store_true',
                        help='Only add missing members instead of clearing the target group first')
    parser.add_argument('--dry-run', action='store_true', help='Report changes without applying them')
    parser.add_argument('--limit', type=int, help='Only process the first N matched devices')
    parser.add_argument('--fail-on-member-errors', action='store_true',
                        help='Exit non-zero when any member operation fails')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate parsed arguments into sync overrides; unset flags are omitted."""
    overrides = {}
    if args.source_groups:
        overrides['source_groups'] = args.source_groups

    filters = {}
    for platform in SUPPORTED_PLATFORMS:
        flag = platform.lower()
        version = getattr(args, f'{flag}_version')
        operator = getattr(args, f'{flag}_operator')
        settings = {}
        if version:
            settings['min_version'] = version
        if operator:
            settings['operator'] = operator
        if settings:
            filters[platform] = settings
    if filters:
        overrides['filters'] = filters

    if args.target_group:
        overrides['target_group'] = args.target_group
    if args.target_group_id:
        overrides['target_group_id'] = args.target_group_id
    if args.add_mode:
        overrides['add_mode'] = args.add_mode
    if args.no_clear:
        overrides['clear_first'] = False
    if args.dry_run:
        overrides['dry_run'] = True
    if args.limit is not None:
        overrides['limit'] = args.limit
    if args.fail_on_member_errors:
        overrides['fail_on_member_errors'] = True
    return overrides


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, overrides=overrides_from_args(args))

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)
        notifications_config = dict(config.get('notifications', {}))
        notifications_config['enable_email'] = True
        if send_test_notification(notifications_config):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
