#!/usr/bin/env python3
"""
Hosts Router Supervisor

Long-lived process that owns the routing policy: it watches the rule store,
recompiles the effective mapping and PAC policy, installs it on the host and
answers control messages from UI contexts.
"""

import os
import time
import threading

from applier import PacFileApplier
from control_server import create_control_server
from database import StoreDatabase
from health import HealthChecker
from notifier import ChangeNotifier, StoreWatcher
from rule_store import RuleStore
from supervisor import RoutingSupervisor
from logger import logger
from exceptions import ApplyError, ConfigurationError


DEFAULT_STORE_FILE = os.path.expanduser('~/.hosts-router/store.json')


class HostsRouterApp:
    """Main application class"""

    def __init__(self):
        # Configuration
        self.store_file = os.getenv('STORE_FILE', DEFAULT_STORE_FILE)
        self.control_host = os.getenv('CONTROL_HOST', '127.0.0.1')
        self.control_port = int(os.getenv('CONTROL_PORT', '8765'))
        self.main_loop_sleep = int(os.getenv('APP_MAIN_LOOP_SLEEP', '1'))
        self.thread_join_timeout = int(os.getenv('APP_THREAD_JOIN_TIMEOUT', '5'))

        self._validate_configuration()

        # Threading
        self.shutdown_event = threading.Event()
        self.threads = []
        self.control_server = None

        # Initialize components
        self._setup_logging()
        self._setup_store()
        self._setup_supervisor()
        self._setup_health_checker()

        logger.set_start_time()
        logger.info("Hosts router supervisor initialized")

    def _validate_configuration(self):
        """Validate application configuration"""
        if not self.store_file:
            raise ConfigurationError("STORE_FILE must not be empty")

        if self.control_port < 1024 or self.control_port > 65535:
            raise ValueError(f"CONTROL_PORT must be between 1024 and 65535, got {self.control_port}")

        if self.main_loop_sleep < 1 or self.main_loop_sleep > 10:
            raise ValueError(f"APP_MAIN_LOOP_SLEEP must be between 1 and 10 seconds, got {self.main_loop_sleep}")

        if self.thread_join_timeout < 1 or self.thread_join_timeout > 30:
            raise ValueError(f"APP_THREAD_JOIN_TIMEOUT must be between 1 and 30 seconds, got {self.thread_join_timeout}")

        logger.info("Application configuration validated",
                    store_file=self.store_file,
                    control_host=self.control_host,
                    control_port=self.control_port,
                    main_loop_sleep=self.main_loop_sleep,
                    thread_join_timeout=self.thread_join_timeout)

    def _setup_logging(self):
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        logger.info(f"Logging configured at {log_level} level")

    def _setup_store(self):
        """Setup store database, notifier and change feed"""
        store_dir = os.path.dirname(os.path.abspath(self.store_file))
        try:
            os.makedirs(store_dir, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create store directory {store_dir}: {e}")

        self.database = StoreDatabase(self.store_file)
        self.notifier = ChangeNotifier()
        self.store = RuleStore(self.database, self.notifier)
        self.store_watcher = StoreWatcher(self.database, self.notifier)
        logger.info("Rule store initialized", store_file=self.store_file)

    def _setup_supervisor(self):
        """Setup policy applier and supervisor"""
        self.applier = PacFileApplier()
        self.supervisor = RoutingSupervisor(self.store, self.notifier, self.applier)
        logger.info("Supervisor initialized", pac_file=self.applier.pac_file)

    def _setup_health_checker(self):
        self.health_checker = HealthChecker(self.database, self.supervisor)
        logger.info("Health checker initialized")

    def start_control_server(self):
        """Start HTTP control server"""
        self.control_server = create_control_server(
            self.supervisor, self.health_checker, self.control_host, self.control_port
        )

        def run_server():
            logger.info(f"Control server started on {self.control_host}:{self.control_port}")
            self.control_server.serve_forever()

        server_thread = threading.Thread(target=run_server, daemon=True, name="control-server")
        self.threads.append(server_thread)
        server_thread.start()

    def start_store_watcher(self):
        """Start store change-feed watcher"""
        watch_thread = threading.Thread(target=self.store_watcher.watch, daemon=True, name="store-watcher")
        self.threads.append(watch_thread)
        watch_thread.start()

    def run(self):
        """Main application loop"""
        logger.info("Starting hosts router supervisor")

        try:
            self.supervisor.init()
        except ApplyError as e:
            # The store is intact; the next change or control message retries
            logger.error(f"Initial policy apply failed: {e}")

        self.start_control_server()
        self.start_store_watcher()

        logger.info("Application started successfully")

        try:
            while not self.shutdown_event.is_set():
                time.sleep(self.main_loop_sleep)
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")
            self.shutdown()
        except Exception as e:
            logger.error(f"Application error: {e}")
            self.shutdown()
            raise

    def shutdown(self):
        """Graceful shutdown"""
        logger.info("Initiating graceful shutdown")
        self.shutdown_event.set()
        self.store_watcher.stop()
        if self.control_server is not None:
            self.control_server.shutdown()
            self.control_server.server_close()
        self.supervisor.shutdown()

        for thread in self.threads:
            if thread.is_alive():
                logger.info(f"Waiting for thread {thread.name} to finish")
                thread.join(timeout=self.thread_join_timeout)

        logger.info("Graceful shutdown completed")


def main():
    """Main entry point"""
    try:
        app = HostsRouterApp()
        app.run()

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        exit(1)
    except Exception as e:
        logger.error(f"Application startup failed: {e}")
        exit(1)


if __name__ == "__main__":
    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    print("=== Hosts Router Supervisor ===")
    print(f"Log level: {log_level}")
    print(f"Store file: {os.getenv('STORE_FILE', DEFAULT_STORE_FILE)}")
    print(f"Control endpoint: {os.getenv('CONTROL_HOST', '127.0.0.1')}:{os.getenv('CONTROL_PORT', '8765')}")
    print("===============================")

    main()
