"""Data models for discovered Proxmox resources and backup state."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

ROOT_NAMESPACE = 'root'


@dataclass
class ClusterMembership:
    """Classification of one PVE endpoint as standalone or cluster member."""
    endpoint_id: str
    type: str  # 'standalone' | 'cluster'
    cluster_id: Optional[str] = None
    node_count: int = 1
    quorate: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class EndpointGroup:
    """Endpoints that reach the same physical cluster, primary first."""
    type: str
    primary_endpoint_id: str
    backup_endpoint_ids: List[str] = field(default_factory=list)
    cluster_id: Optional[str] = None

    @property
    def endpoint_ids(self) -> List[str]:
        return [self.primary_endpoint_id] + list(self.backup_endpoint_ids)


@dataclass
class Node:
    """Represents a PVE node as seen through one endpoint."""
    node: str
    id: str
    endpoint_id: str
    display_name: str
    cluster_identifier: str
    cluster_name: Optional[str] = None
    endpoint_type: str = 'standalone'
    status: str = 'unknown'  # 'online' | 'offline' | 'unknown'
    cpu: Optional[float] = None
    maxcpu: Optional[int] = None
    mem: Optional[int] = None  # in bytes
    maxmem: Optional[int] = None  # in bytes
    disk: Optional[int] = None  # in bytes
    maxdisk: Optional[int] = None  # in bytes
    uptime: int = 0  # in seconds
    loadavg: Optional[List[str]] = None
    storage: List[Dict[str, Any]] = field(default_factory=list)
    ip: Optional[str] = None
    possible_transition: bool = False
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Guest:
    """Represents a VM (qemu) or container (lxc)."""
    id: str
    vmid: int
    name: str
    node: str
    type: str  # 'qemu' | 'lxc'
    endpoint_id: str
    cluster_identifier: str = ''
    status: str = 'unknown'
    cpu: Optional[float] = None
    cpus: Optional[int] = None
    mem: Optional[int] = None  # in bytes
    maxmem: Optional[int] = None  # in bytes
    disk: Optional[int] = None  # in bytes
    maxdisk: Optional[int] = None  # in bytes
    uptime: int = 0
    netin: Optional[int] = None
    netout: Optional[int] = None
    diskread: Optional[int] = None
    diskwrite: Optional[int] = None
    template: bool = False
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Snapshot:
    """A PBS backup snapshot; immutable once fetched."""
    datastore: str
    namespace: str
    backup_type: str
    backup_id: str
    backup_time: int  # epoch seconds
    size: Optional[int] = None
    protected: bool = False
    owner: Optional[str] = None
    comment: Optional[str] = None
    verification_state: Optional[str] = None
    verification_upid: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any], datastore: str, namespace: Optional[str] = None) -> 'Snapshot':
        """Build a snapshot from a ``/admin/datastore/{ds}/snapshots`` entry."""
        verification = raw.get('verification') or {}
        ns = namespace if namespace not in (None, '') else raw.get('ns')
        return cls(
            datastore=datastore,
            namespace=ns or ROOT_NAMESPACE,
            backup_type=str(raw.get('backup-type', '')),
            backup_id=str(raw.get('backup-id', '')),
            backup_time=int(raw.get('backup-time') or 0),
            size=raw.get('size'),
            protected=bool(raw.get('protected', False)),
            owner=raw.get('owner'),
            comment=raw.get('comment'),
            verification_state=verification.get('state'),
            verification_upid=verification.get('upid'),
        )

    @property
    def is_verified(self) -> bool:
        return self.verification_state is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackupRun:
    """One backup job run for a guest on a day, real or reconstructed."""
    key: str
    datastore: str
    namespace: str
    guest_type: str
    guest_id: str
    start_time: int
    end_time: Optional[int] = None
    status: str = 'OK'
    exitcode: Optional[Any] = None
    user: Optional[str] = None
    node: Optional[str] = None
    upid: Optional[str] = None
    size: Optional[int] = None
    snapshot_count: int = 0
    enhanced_with_real_task: bool = False
    is_failed_task: bool = False

    @property
    def guest(self) -> str:
        return f"{self.guest_type}/{self.guest_id}"

    @property
    def dedup_key(self) -> str:
        """Identity used to collapse duplicates: the UPID, else type-node-start-guest.

        The guest is qualified with datastore and namespace, since synced
        copies of a snapshot share its backup time.
        """
        if self.upid:
            return self.upid
        return f"backup-{self.node}-{self.start_time}-{self.datastore}/{self.namespace}/{self.guest}"

    def to_task(self) -> Dict[str, Any]:
        """Shape the run like a PBS task entry for task categorisation."""
        return {
            'upid': self.upid,
            'node': self.node,
            'worker_type': 'backup',
            'worker_id': f"{self.datastore}:{self.guest}",
            'status': self.status,
            'starttime': self.start_time,
            'endtime': self.end_time,
            'exitcode': self.exitcode,
            'user': self.user,
            'guest': self.guest,
            'guestId': self.guest_id,
            'guestType': self.guest_type,
            'namespace': self.namespace,
            'datastore': self.datastore,
            'pbsBackupRun': True,
            'enhancedWithRealTask': self.enhanced_with_real_task,
            'snapshotCount': self.snapshot_count,
            'size': self.size,
        }


@dataclass
class VerificationRecommendations:
    """Actionable advice derived from verification diagnostics."""
    priority: str = 'low'  # 'low' | 'medium' | 'high'
    actions: List[str] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)


@dataclass
class VerificationDiagnostics:
    """Verification health of one datastore, recomputed each cycle."""
    datastore: str
    total_snapshots: int = 0
    verified_snapshots: int = 0
    failed_verifications: int = 0
    unverified_snapshots: int = 0
    health_score: str = 'unknown'  # excellent | good | fair | poor | error
    verification_jobs: List[str] = field(default_factory=list)
    stale_references: List[Dict[str, Any]] = field(default_factory=list)
    recent_failures: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: VerificationRecommendations = field(default_factory=VerificationRecommendations)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Datastore:
    """Represents a PBS datastore and its snapshots."""
    name: str
    path: Optional[str] = None
    total: Optional[int] = None  # in bytes
    used: Optional[int] = None  # in bytes
    available: Optional[int] = None  # in bytes
    gc_status: str = 'unknown'
    deduplication_factor: Optional[float] = None
    namespaces: List[str] = field(default_factory=list)
    snapshots: List[Snapshot] = field(default_factory=list)
    verification: Optional[VerificationDiagnostics] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'path': self.path,
            'total': self.total,
            'used': self.used,
            'available': self.available,
            'gc_status': self.gc_status,
            'deduplication_factor': self.deduplication_factor,
            'namespaces': list(self.namespaces),
            'snapshots': [s.to_dict() for s in self.snapshots],
            'verification': self.verification.to_dict() if self.verification else None,
        }


@dataclass
class PbsInstance:
    """Everything discovered about one PBS instance in a cycle."""
    pbs_endpoint_id: str
    pbs_instance_name: str
    status: str = 'ok'  # 'ok' | 'offline' | 'error'
    message: Optional[str] = None
    node_name: Optional[str] = None
    version: Optional[str] = None
    subscription_status: Optional[str] = None
    datastores: List[Datastore] = field(default_factory=list)
    verification_jobs: List[Dict[str, Any]] = field(default_factory=list)
    backup_runs: List[BackupRun] = field(default_factory=list)
    task_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def all_tasks(self) -> List[Dict[str, Any]]:
        """Recent tasks of every category, flattened."""
        tasks = []
        for category in ('backupTasks', 'verificationTasks', 'syncTasks', 'pruneTasks'):
            tasks.extend(self.task_data.get(category, {}).get('recentTasks', []))
        return tasks

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'pbs_endpoint_id': self.pbs_endpoint_id,
            'pbs_instance_name': self.pbs_instance_name,
            'status': self.status,
            'message': self.message,
            'node_name': self.node_name,
            'version': self.version,
            'subscription_status': self.subscription_status,
            'datastores': [ds.to_dict() for ds in self.datastores],
            'verification_jobs': list(self.verification_jobs),
            'backup_runs': [asdict(run) for run in self.backup_runs],
        }
        data.update(self.task_data)
        return data


@dataclass
class AggregateSnapshot:
    """The single output of a discovery cycle."""
    nodes: List[Node] = field(default_factory=list)
    vms: List[Guest] = field(default_factory=list)
    containers: List[Guest] = field(default_factory=list)
    pbs: List[PbsInstance] = field(default_factory=list)
    pve_backups: Dict[str, List[Dict[str, Any]]] = field(default_factory=lambda: {
        'backupTasks': [],
        'storageBackups': [],
        'guestSnapshots': [],
    })
    all_pbs_tasks: List[Dict[str, Any]] = field(default_factory=list)
    aggregated_pbs_task_summary: Dict[str, int] = field(default_factory=lambda: {
        'total': 0,
        'ok': 0,
        'failed': 0,
    })

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'vms': [g.to_dict() for g in self.vms],
            'containers': [g.to_dict() for g in self.containers],
            'pbs': [p.to_dict() for p in self.pbs],
            'pveBackups': {k: list(v) for k, v in self.pve_backups.items()},
            'allPbsTasks': list(self.all_pbs_tasks),
            'aggregatedPbsTaskSummary': dict(self.aggregated_pbs_task_summary),
        }
