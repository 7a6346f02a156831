"""
Accord — Contract Registry

Lifecycle and ownership rules for contract files. Content semantics
(OpenAPI paths, interface signatures) are not interpreted here; only the
status and the `x-accord-request` annotation matter.

Rules:
  - Exactly one writable copy per owner. Mirrors (other owners' contracts
    pulled from the hub) are read-only: writes raise OwnershipError.
  - annotate() marks an entry `proposed` while a request is unresolved;
    a second request cannot take over an annotated entry.
  - finalize() clears the annotation. It accepts only an in-progress
    request, so it can only run inside that request's completion.
  - promote() (draft → stable) is human-only; the daemon is refused.

Every mutation marks the owner dirty. The owning transition is durable
once the sync engine has propagated the owner's copy to the hub; the
daemon and the CLI clear `dirty` after a successful push.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from accord.errors import ConflictError, OwnershipError, RecordParseError, StateError
from accord.records import RecordStore
from accord.types import (
    CONTRACT_TRANSITIONS,
    Contract,
    ContractFormat,
    ContractStatus,
    Request,
    RequestStatus,
)

logger = logging.getLogger("accord.contracts")

ContractRef = str | Path | Contract


class ContractRegistry:
    """Owner-checked contract mutations over a RecordStore."""

    def __init__(
        self,
        store: RecordStore,
        owned: Iterable[str],
        automated: bool = False,
    ):
        self.store = store
        self.owned = set(owned)
        self.automated = automated
        # Owners with contract changes not yet pushed; publishers clear it
        self.dirty: set[str] = set()

    # ── Loading ─────────────────────────────────────────────────

    def owner_of(self, path: Path) -> str:
        """
        Owner of a contract file.

        contracts/{owner}.yaml and contracts/internal/{module}.md belong to
        their stem; contracts/internal/{owner}/{module}.md is a mirror of
        {owner}'s module contract.
        """
        internal = self.store.internal_dir.resolve()
        parent = path.resolve().parent
        if parent.parent == internal:
            return parent.name
        return path.stem

    def load(self, ref: ContractRef) -> Contract:
        if isinstance(ref, Contract):
            return ref
        path = Path(ref)
        if path.suffix not in (".yaml", ".yml", ".md"):
            # Bare owner name
            own = self.store.contract_path(str(ref), ContractFormat.OPENAPI)
            path = own if own.exists() else self.store.contract_path(str(ref), ContractFormat.INTERNAL)
        try:
            contract = self.store.read_contract_path(path)
        except FileNotFoundError as e:
            raise StateError(f"contract not found: {ref}") from e
        contract.owner = self.owner_of(contract.path)
        return contract

    def is_owned(self, contract: Contract) -> bool:
        return contract.owner in self.owned

    def _require_owned(self, contract: Contract) -> None:
        if not self.is_owned(contract):
            raise OwnershipError(
                f"contract {contract.path} belongs to '{contract.owner}'; "
                f"edit the owning copy and let sync propagate it"
            )

    def _save(self, contract: Contract) -> Contract:
        self.store.write_contract(contract)
        self.dirty.add(contract.owner)
        return contract

    def _move(self, contract: Contract, to: ContractStatus) -> None:
        if to != contract.status and to not in CONTRACT_TRANSITIONS[contract.status]:
            raise StateError(
                f"contract {contract.path}: {contract.status.value} → {to.value} is not allowed"
            )
        contract.status = to

    # ── Operations ──────────────────────────────────────────────

    def annotate(self, ref: ContractRef, request_id: str) -> Contract:
        """Mark the entry `proposed` pending `request_id`."""
        contract = self.load(ref)
        self._require_owned(contract)
        if contract.is_proposed:
            if contract.request == request_id:
                return contract
            raise StateError(
                f"contract {contract.path} is already proposed under {contract.request}"
            )
        self._move(contract, ContractStatus.PROPOSED)
        contract.request = request_id
        logger.info("Annotated %s as proposed (%s)", contract.path, request_id)
        return self._save(contract)

    def finalize(self, ref: ContractRef, request: Request) -> Contract:
        """
        Clear the `proposed` annotation left for `request`.

        No-op when the entry carries no annotation (the worker may have
        cleared it already). Refused when it belongs to another request.
        """
        if request.status != RequestStatus.IN_PROGRESS:
            raise StateError(
                f"finalize is only part of completing an in-progress request "
                f"({request.id} is {request.status.value})"
            )
        contract = self.load(ref)
        self._require_owned(contract)
        if contract.request is None:
            return contract
        if contract.request != request.id:
            raise StateError(
                f"contract {contract.path} is proposed under {contract.request}, "
                f"not {request.id}"
            )
        if contract.status == ContractStatus.PROPOSED:
            self._move(contract, ContractStatus.STABLE)
        contract.request = None
        logger.info("Finalized %s (%s)", contract.path, request.id)
        return self._save(contract)

    def promote(self, ref: ContractRef) -> Contract:
        """draft → stable, after human review."""
        if self.automated:
            raise StateError("promote is a human-only operation")
        contract = self.load(ref)
        self._require_owned(contract)
        if contract.status != ContractStatus.DRAFT:
            raise StateError(
                f"contract {contract.path}: promote requires draft, found {contract.status.value}"
            )
        self._move(contract, ContractStatus.STABLE)
        logger.info("Promoted %s to stable", contract.path)
        return self._save(contract)

    def proposed_annotations(self) -> dict[str, str]:
        """request_id → contract path for every annotated owned contract."""
        found = {}
        for path in self.store.list_contracts():
            try:
                contract = self.load(path)
            except (RecordParseError, ConflictError, StateError) as e:
                logger.warning("Unreadable contract %s: %s", path, e)
                continue
            if contract.request and self.is_owned(contract):
                found[contract.request] = str(path)
        return found
