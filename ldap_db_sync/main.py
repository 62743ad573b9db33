"""
Command line entry point for LDAP DB Sync.

Loads configuration, sets up logging once, and hands a sync run to the
scheduler. Configuration errors stop the process before any run starts;
everything that goes wrong during a run is logged and the process carries on.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_db_sync.config import load_config, ConfigurationError
from ldap_db_sync.database import DatabaseClient
from ldap_db_sync.ldap_client import LDAPClient
from ldap_db_sync.logging_setup import setup_logging
from ldap_db_sync.scheduler import Scheduler
from ldap_db_sync.sync import SyncRun

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG_ERROR = 2


def run_sync(config: Dict[str, Any], dry_run: bool = False) -> int:
    """
    Run the sync once or on the configured interval.

    Returns:
        Exit code; run failures are logged and do not change it
    """
    sync_run = SyncRun(config, dry_run=dry_run, logger=logging.getLogger('ldap_db_sync.sync'))
    scheduler = Scheduler(sync_run.execute, interval=config['sync']['interval'])
    scheduler.start()
    return EXIT_OK


def health_check(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Check configuration and connectivity to both systems.

    Returns:
        Dictionary containing health status and details
    """
    health_status = {
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'checks': {}
    }

    try:
        config = load_config(config_path)
        health_status['checks']['configuration'] = {
            'status': 'pass',
            'message': 'Configuration loaded successfully'
        }
    except ConfigurationError as e:
        health_status['checks']['configuration'] = {
            'status': 'fail',
            'message': f'Configuration error: {e}'
        }
        health_status['status'] = 'unhealthy'
        return health_status

    error_config = dict(config['error_handling'], max_retries=1)
    columns = list(config['ldap']['attribute_map'].values())
    clients = {
        'database': DatabaseClient(config['database'], columns, error_config),
        'ldap': LDAPClient(config['ldap'], error_config),
    }

    for name, client in clients.items():
        try:
            with client:
                pass
            health_status['checks'][name] = {
                'status': 'pass',
                'message': 'Connection successful'
            }
        except Exception as e:
            health_status['checks'][name] = {
                'status': 'fail',
                'message': f'Connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

    return health_status


def main(argv=None):
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Sync user attributes from LDAP into a database')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and connectivity instead of syncing')
    parser.add_argument('--dry-run', action='store_true',
                        help='Compute changes without updating the database')

    args = parser.parse_args(argv)

    if args.health_check:
        setup_logging(None)
        health_status = health_check(args.config)
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_UNHEALTHY)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging(None)
        logger.critical(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config['logging'], debug=bool(config['sync']['debug']))
    sys.exit(run_sync(config, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
