#!/usr/bin/env python3
"""
Proxmox Discovery Runner

Main entry point for periodic inventory, metrics and backup-health discovery
across Proxmox VE and Proxmox Backup Server endpoints.
"""

import json
import logging
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pulse_discovery.api_client import initialize_api_clients
from pulse_discovery.config import ConfigurationError, DiscoveryConfig
from pulse_discovery.models import AggregateSnapshot
from pulse_discovery.orchestrator import DiscoveryOrchestrator
from pulse_discovery.utils import format_bytes

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_file: str = 'discovery.log') -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


class DiscoveryRunner:
    """Runs discovery and metrics cycles and publishes the latest state as JSON."""

    def __init__(self, config: DiscoveryConfig, pve_clients, pbs_clients, orchestrator: Optional[DiscoveryOrchestrator] = None):
        self.config = config
        self.pve_clients = pve_clients
        self.pbs_clients = pbs_clients
        self.orchestrator = orchestrator or DiscoveryOrchestrator(backup_history_days=config.backup_history_days)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self.snapshot: Optional[AggregateSnapshot] = None
        self.metrics: List[Dict[str, Any]] = []

    def run_discovery_cycle(self) -> AggregateSnapshot:
        snapshot = self.orchestrator.fetch_discovery_data(self.pve_clients, self.pbs_clients)
        with self._lock:
            self.snapshot = snapshot
        self.write_snapshot()
        return snapshot

    def run_metrics_cycle(self) -> List[Dict[str, Any]]:
        with self._lock:
            snapshot = self.snapshot
        if snapshot is None:
            return []

        running_vms = [vm for vm in snapshot.vms if vm.status == 'running']
        running_containers = [ct for ct in snapshot.containers if ct.status == 'running']
        metrics = self.orchestrator.fetch_metrics_data(running_vms, running_containers, self.pve_clients)
        with self._lock:
            self.metrics = metrics
        self.write_snapshot()
        return metrics

    def write_snapshot(self) -> Optional[Path]:
        """Write the latest aggregate plus metrics to the snapshot file."""
        with self._lock:
            if self.snapshot is None:
                return None
            data = self.snapshot.to_dict()
            data['metrics'] = list(self.metrics)
        data['generated'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')

        output_path = self.config.snapshot_file
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = output_path.with_suffix(output_path.suffix + '.tmp')
            tmp_path.write_text(json.dumps(data, indent=2, default=str), encoding='utf-8')
            tmp_path.replace(output_path)
        except OSError as e:
            logger.error(f"✗ Failed to write snapshot to {output_path}: {e}")
            return None
        return output_path

    def _loop(self, name: str, interval: float, cycle, initial_delay: float = 0.0) -> None:
        if self._stop.wait(initial_delay):
            return
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                cycle()
            except Exception as e:
                logger.error(f"✗ {name} cycle failed: {e}", exc_info=True)
            elapsed = time.monotonic() - started
            self._stop.wait(max(0.0, interval - elapsed))

    def run_forever(self) -> None:
        """Run both cycles on their intervals until interrupted.

        Each cycle runs in its own thread and the next run starts only after
        the previous one finished, so runs of the same cycle never overlap.
        """
        self.run_discovery_cycle()
        threads = [
            threading.Thread(
                target=self._loop,
                args=('Discovery', self.config.discovery_interval, self.run_discovery_cycle,
                      self.config.discovery_interval),
                name='discovery-cycle',
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=('Metrics', self.config.metric_interval, self.run_metrics_cycle),
                name='metrics-cycle',
                daemon=True,
            ),
        ]
        for thread in threads:
            thread.start()

        try:
            while any(t.is_alive() for t in threads):
                for thread in threads:
                    thread.join(timeout=1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping discovery cycles...")
            self.stop()
            for thread in threads:
                thread.join(timeout=5.0)

    def stop(self) -> None:
        self._stop.set()


def main():
    """Main function to run discovery."""
    print("=" * 70)
    print("Proxmox Discovery")
    print("=" * 70)
    print()

    try:
        # Load configuration
        config = DiscoveryConfig()
        setup_logging(config.log_level)
        logger.info("✓ Configuration loaded")
        logger.info(f"  PVE endpoints: {len(config.pve_endpoints)}")
        logger.info(f"  PBS instances: {len(config.pbs_endpoints)}")
        logger.info(f"  Snapshot file: {config.snapshot_file}")
        print()

        # Initialize API clients
        pve_clients, pbs_clients = initialize_api_clients(config.pve_endpoints, config.pbs_endpoints)
        if not pve_clients and not pbs_clients:
            logger.error("No API clients could be initialized")
            sys.exit(1)
        print()

        runner = DiscoveryRunner(config, pve_clients, pbs_clients)

        if config.run_once:
            snapshot = runner.run_discovery_cycle()
            metrics = runner.run_metrics_cycle()

            # Summary
            print()
            print("=" * 70)
            print("Discovery Summary")
            print("=" * 70)
            print(f"✓ Nodes: {len(snapshot.nodes)}")
            print(f"✓ VMs: {len(snapshot.vms)}")
            print(f"✓ Containers: {len(snapshot.containers)}")
            print(f"✓ PBS instances: {len(snapshot.pbs)}")
            for instance in snapshot.pbs:
                for datastore in instance.datastores:
                    print(
                        f"  - {instance.pbs_instance_name}/{datastore.name}: "
                        f"{format_bytes(datastore.used)} used of {format_bytes(datastore.total)}, "
                        f"{len(datastore.snapshots)} snapshots"
                    )
            print(f"✓ Guests with metrics: {len(metrics)}")
            offline = [p for p in snapshot.pbs if p.status != 'ok']
            if offline:
                print(f"✗ Unavailable PBS instances: {len(offline)}")
                for instance in offline:
                    print(f"  - {instance.pbs_instance_name}: {instance.message}")
            print()
            print(f"Snapshot written to: {config.snapshot_file.absolute()}")
            print()
            sys.exit(0)

        logger.info(
            f"Starting cycles (discovery every {config.discovery_interval:g}s, "
            f"metrics every {config.metric_interval:g}s)"
        )
        runner.run_forever()

    except ConfigurationError as e:
        if not logging.getLogger().handlers:
            setup_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        if not logging.getLogger().handlers:
            setup_logging()
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
