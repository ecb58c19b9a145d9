"""
Main orchestrator for CRM AD Sync.

This module runs the synchronization pipeline: list enabled CRM users with a
domain account, look up each one in Active Directory through the CRM user
manager service, and patch the CRM user with the directory attributes.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from crm_ad_sync.config import load_config, ConfigurationError
from crm_ad_sync.logging_setup import setup_logging
from crm_ad_sync.http_client import CrmHttpClient, CrmAPIError
from crm_ad_sync.users import list_users
from crm_ad_sync.directory import enrich_user
from crm_ad_sync.updater import update_user, full_name
from crm_ad_sync.notifications import (
    send_failure_notification,
    send_listing_failure,
    send_update_error_notification,
    send_success_summary,
    format_runtime
)

logger = logging.getLogger(__name__)


EXIT_SUCCESS = 0
EXIT_RECORD_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_LISTING_FAILURE = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class UserListingError(SyncError):
    """Raised when the CRM user listing fails; nothing can be synchronized."""
    pass


class SyncOrchestrator:
    """
    Runs one pass of the list -> enrich -> update pipeline.

    Records are processed strictly one at a time. A failed lookup or update only
    affects that user; a failed listing aborts the run.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Log the update payloads instead of sending them
        """
        self.config = None
        self.client = None
        self.config_path = config_path
        self.dry_run = dry_run

        self.sync_stats = {
            'users_listed': 0,
            'users_enriched': 0,
            'users_skipped': 0,
            'users_updated': 0,
            'users_failed': 0,
            'enrichment_errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

        # One line per failed user, for the error report
        self.user_errors: List[str] = []

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting CRM AD Sync" + (" (dry run)" if self.dry_run else ""))

            self._connect()
            self._process_users()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            if self.user_errors:
                self._send_update_error_notification()
                logger.warning(f"Sync completed with {len(self.user_errors)} user failures")
                return EXIT_RECORD_FAILURES

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            # Only possible once the file itself has loaded
            self._send_failure_notification("Configuration Error", str(e))
            return EXIT_CONFIGURATION_ERROR
        except UserListingError as e:
            logger.error(f"CRM user listing failed: {e}")
            self._send_listing_failure(str(e))
            return EXIT_LISTING_FAILURE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect(self):
        """Create the CRM client and acquire credentials."""
        try:
            self.client = CrmHttpClient(self.config['crm'])
        except CrmAPIError as e:
            raise ConfigurationError(f"Failed to initialize CRM client: {e}")

        if not self.client.authenticate():
            raise UserListingError(f"Authentication failed for {self.client.server_url}")

    def _process_users(self):
        """List users and push directory attributes to each, one record at a time."""
        users = list_users(self.client)

        while True:
            try:
                user = next(users)
            except StopIteration:
                break
            except CrmAPIError as e:
                raise UserListingError(str(e))

            self.sync_stats['users_listed'] += 1
            self._process_user(user)

    def _process_user(self, user: Dict[str, str]):
        """Enrich and update a single user; failures are recorded, not raised."""
        try:
            enriched = enrich_user(self.client, user)
        except CrmAPIError as e:
            self.sync_stats['enrichment_errors'] += 1
            message = f"Directory lookup failed for user {user['id']} ({user['domainName']}): {e}"
            self.user_errors.append(message)
            logger.error(message)
            return

        if enriched is None:
            self.sync_stats['users_skipped'] += 1
            return

        self.sync_stats['users_enriched'] += 1

        if update_user(self.client, enriched, dry_run=self.dry_run):
            self.sync_stats['users_updated'] += 1
        else:
            self.sync_stats['users_failed'] += 1
            self.user_errors.append(f"Update failed for user {user['id']} ({full_name(enriched)})")

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for an aborted run."""
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_listing_failure(self, error_message: str):
        """Send email notification for a failed user listing."""
        try:
            send_listing_failure(error_message, self.config.get('notifications', {}),
                                 self.config.get('crm', {}).get('server_url', ''))
        except Exception as e:
            logger.error(f"Failed to send listing failure notification: {e}")

    def _send_update_error_notification(self):
        """Send email notification for failed users."""
        try:
            send_update_error_notification(len(self.user_errors), self.user_errors,
                                           self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send update error notification: {e}")

    def _send_success_notification(self):
        """Send email notification for a successful sync."""
        try:
            send_success_summary(self.sync_stats, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Users listed: {stats['users_listed']}")
        logger.info(f"Users enriched: {stats['users_enriched']}")
        logger.info(f"Users without directory record: {stats['users_skipped']}")
        logger.info(f"Users updated: {stats['users_updated']}")
        logger.info(f"Failed updates: {stats['users_failed']}")
        logger.info(f"Directory lookup errors: {stats['enrichment_errors']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, CRM connectivity, the directory service and email settings.

        The directory endpoint is only probed when the CRM check passed, since
        both use the same server and credentials.

        Returns:
            ``{'status': 'healthy'|'unhealthy', 'timestamp': ..., 'checks': {name: {status, message}}}``
        """
        health = {'status': 'healthy', 'timestamp': datetime.now().isoformat(), 'checks': {}}

        def record(name, status, message):
            health['checks'][name] = {'status': status, 'message': message}
            if status == 'fail':
                health['status'] = 'unhealthy'

        try:
            self._load_configuration()
        except ConfigurationError as e:
            record('configuration', 'fail', f'Configuration error: {e}')
            return health
        record('configuration', 'pass', f'Loaded {self.config_path or "default configuration file"}')

        client = None
        try:
            client = CrmHttpClient(self.config['crm'])
            if not client.authenticate():
                raise CrmAPIError("authentication failed")
            whoami = client.request('GET', f"{client.api_path}/WhoAmI")
            record('crm', 'pass', f"Connected as user {whoami.get('UserId', 'unknown')}")
        except CrmAPIError as e:
            record('crm', 'fail', f'CRM connection failed: {e}')

        if client and health['checks']['crm']['status'] == 'pass':
            try:
                status, reason, _ = client.send('GET', f"{client.directory_endpoint}?WSDL")
                if status >= 400:
                    raise CrmAPIError(f"HTTP {status}: {reason}", status_code=status)
                record('directory', 'pass', f'{client.directory_endpoint} reachable')
            except CrmAPIError as e:
                record('directory', 'fail', f'Directory service check failed: {e}')

        if client:
            client.close_connection()

        notifications = self.config.get('notifications', {})
        if not notifications.get('enable_email', False):
            record('notifications', 'skip', 'Email notifications disabled')
        else:
            missing = [key for key in ('smtp_server', 'email_from', 'email_to') if not notifications.get(key)]
            if missing:
                record('notifications', 'fail', f"Missing notification settings: {', '.join(missing)}")
            else:
                record('notifications', 'pass', f"Email via {notifications['smtp_server']}")

        return health

    def _cleanup(self):
        """Clean up resources."""
        if self.client:
            self.client.close_connection()


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Synchronize CRM user profiles from Active Directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--health-check', action='store_true',
                      help='Perform health check instead of sync')
    mode.add_argument('--test-email', action='store_true',
                      help='Send test email notification')
    mode.add_argument('--dry-run', action='store_true',
                      help='Look up users but only log the updates that would be sent')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        from crm_ad_sync.notifications import test_notification_config
        notifications_config = dict(orchestrator.config.get('notifications', {}))
        notifications_config['enable_email'] = True
        if test_notification_config(notifications_config):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
