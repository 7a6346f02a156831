"""
Accord - Cross-Repository Request Coordination

Service teams exchange requests through file-based inboxes kept in git.
A per-service daemon picks up approved work, hands it to an external
worker process, and records the outcome; contracts and history travel
with the requests through a shared hub repository.

  - accord.records: request / contract / registry file formats and storage
  - accord.lifecycle, accord.operations: the request state machine
  - accord.contracts: proposed-annotation lifecycle of contract entries
  - accord.sync, accord.vcs: hub replication over git
  - accord.daemon: the dispatch loop
  - accord.cascade, accord.escalation: derived requests
"""

__version__ = "0.1.0"

from accord.errors import (
    AccordError, ConfigError, ConflictError, OwnershipError, RecordParseError,
    StateError, SyncError, WorkerFailure, WorkerTimeout,
)
from accord.types import (
    Contract, ContractStatus, Priority, Request, RequestStatus, RequestType, Scope,
)
from accord.records import RecordStore
