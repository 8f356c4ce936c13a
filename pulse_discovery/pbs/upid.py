"""Parsing of Proxmox task identifiers (UPIDs)."""

import re
from dataclasses import dataclass
from typing import Optional

_HEX_ESCAPE = re.compile(r'\\x([0-9a-fA-F]{2})')


@dataclass(frozen=True)
class Upid:
    """Fields of a task identifier.

    PBS layout: ``UPID:node:pid:pstart:task_id:starttime:type:id:user:``
    PVE layout: ``UPID:node:pid:pstart:starttime:type:id:user:``
    Numeric fields are hexadecimal; ``id`` has ':' and '-' escaped as ``\\xNN``.
    """
    node: str
    pid: int
    pstart: int
    starttime: int
    worker_type: str
    worker_id: str
    user: str
    task_id: Optional[int] = None

    @property
    def job_id(self) -> Optional[str]:
        """The part of the decoded id after the last colon, e.g. 'v-3fb332a6-ba43'."""
        if ':' not in self.worker_id:
            return None
        job = self.worker_id.rsplit(':', 1)[1]
        return job or None


def decode_hex_escapes(value: str) -> str:
    """Turn ``\\x3a``-style escapes back into characters."""
    return _HEX_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), value)


def parse_upid(upid: Optional[str]) -> Optional[Upid]:
    """Parse a UPID string.

    Returns:
        Parsed Upid, or None when the string does not follow either layout
    """
    if not upid or not isinstance(upid, str) or not upid.startswith('UPID:'):
        return None

    parts = upid.split(':')
    # Drop the empty field produced by the trailing colon
    if parts and parts[-1] == '':
        parts = parts[:-1]

    try:
        if len(parts) >= 9:
            _, node, pid, pstart, task_id, starttime, worker_type, worker_id, user = parts[:9]
            counter: Optional[int] = int(task_id, 16)
        elif len(parts) == 8:
            _, node, pid, pstart, starttime, worker_type, worker_id, user = parts
            counter = None
        else:
            return None

        return Upid(
            node=node,
            pid=int(pid, 16),
            pstart=int(pstart, 16),
            starttime=int(starttime, 16),
            worker_type=worker_type,
            worker_id=decode_hex_escapes(worker_id),
            user=user,
            task_id=counter,
        )
    except ValueError:
        return None


def verification_job_id(upid: Optional[str]) -> Optional[str]:
    """Extract the verification job id referenced by a ``verificationjob`` UPID."""
    parsed = parse_upid(upid)
    if parsed is None or parsed.worker_type != 'verificationjob':
        return None
    return parsed.job_id
