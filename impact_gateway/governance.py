"""
Governance contract: stake-gated membership and the proposal lifecycle.

Proposal states (derived at read time, never stored):

    nonexistent -> active -> {passed | rejected} -> executed

    active    now <= deadline
    passed    now >  deadline and for_votes >  against_votes
    rejected  now >  deadline and for_votes <= against_votes
    executed  funds released (terminal)

The contract holds no lock of its own. Every state change is a transaction on
its host ledger (LocalLedger), which serializes writes, moves native value and
restores a snapshot when a transaction reverts, so a revert leaves no partial
state behind.

Revert reasons are stable strings surfaced verbatim to callers.
"""

from __future__ import annotations

import copy
import hashlib
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .crypto import _safe_hash_encode, _sha256_hex
from .errors import ContractRevert, revert

logger = logging.getLogger("impact_gateway.governance")

DEFAULT_MINIMUM_STAKE = 10**17
DEFAULT_VOTING_WINDOW_SECONDS = 3 * 24 * 60 * 60
DEFAULT_VERIFICATION_THRESHOLD = 1

ROLE_VERIFIER = "verifier"
ROLE_AGENT = "agent"


class VotePolicy(str, Enum):
    TOKEN_WEIGHTED = "token-weighted"
    FLAT = "flat"


class ProposalStatus(str, Enum):
    NONEXISTENT = "nonexistent"
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"
    EXECUTED = "executed"


# ---------------------------------------------------------------------------
# Host ledger
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    name: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    timestamp: int
    sender: str
    method: str
    value: int
    result: Any
    events: List[Event]


class TxContext:
    """What a contract method sees while it runs inside a transaction."""

    def __init__(self, ledger: "LocalLedger", contract_address: str, sender: str, value: int, timestamp: int):
        self._ledger = ledger
        self.contract_address = contract_address
        self.sender = sender
        self.value = value
        self.timestamp = timestamp
        self.events: List[Event] = []

    def emit(self, name: str, **args: Any) -> None:
        self.events.append(Event(name=name, args=args))

    def transfer(self, to: str, amount: int) -> None:
        self._ledger._move(self.contract_address, to, amount)


class LocalLedger:
    """In-process host ledger.

    Owns native balances, a seconds clock and the single write lock that
    serializes every state-changing transaction.
    """

    def __init__(self, *, start_time: Optional[int] = None):
        self._lock = threading.RLock()
        self._balances: Dict[str, int] = {}
        self._time = int(start_time if start_time is not None else time.time())
        self._nonce = itertools.count(1)
        self._block = 0
        self.receipts: List[Receipt] = []

    # Clock ------------------------------------------------------------
    def now(self) -> int:
        with self._lock:
            return self._time

    def advance_time(self, seconds: int) -> int:
        with self._lock:
            self._time += int(seconds)
            return self._time

    # Balances -----------------------------------------------------------
    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(address, 0)

    def mint(self, address: str, amount: int) -> None:
        """Credit native value to an address (test faucet / genesis allocation)."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + int(amount)

    def _move(self, src: str, dst: str, amount: int) -> None:
        amount = int(amount)
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if self._balances.get(src, 0) < amount:
            raise revert("InsufficientFunds", f"{src} holds less than {amount}")
        self._balances[src] = self._balances.get(src, 0) - amount
        self._balances[dst] = self._balances.get(dst, 0) + amount

    # Transactions -------------------------------------------------------
    def transact(
        self,
        sender: str,
        contract: "ImpactDAO",
        method: Callable[..., Any],
        *args: Any,
        value: int = 0,
        **kwargs: Any,
    ) -> Receipt:
        """Run ``method(ctx, *args)`` as one atomic transaction."""
        value = int(value)
        if value < 0:
            raise ValueError("value must be non-negative")
        with self._lock:
            nonce = next(self._nonce)
            balances = dict(self._balances)
            state = contract._snapshot()
            ctx = TxContext(self, contract.address, sender, value, self._time)
            try:
                if value:
                    if self._balances.get(sender, 0) < value:
                        raise revert("InsufficientBalance", f"{sender} cannot send {value}")
                    self._move(sender, contract.address, value)
                result = method(ctx, *args, **kwargs)
            except BaseException:
                self._balances = balances
                contract._restore(state)
                raise
            self._block += 1
            tx_hash = hashlib.sha256(
                _safe_hash_encode([sender, contract.address, method.__name__, str(nonce), str(self._time)])
            ).hexdigest()
            receipt = Receipt(
                tx_hash="0x" + tx_hash,
                block_number=self._block,
                timestamp=self._time,
                sender=sender,
                method=method.__name__,
                value=value,
                result=result,
                events=list(ctx.events),
            )
            self.receipts.append(receipt)
            return receipt

    def events(self, name: Optional[str] = None) -> List[Event]:
        with self._lock:
            return [e for r in self.receipts for e in r.events if name is None or e.name == name]


# ---------------------------------------------------------------------------
# Contract state
# ---------------------------------------------------------------------------

@dataclass
class Member:
    address: str
    role: str
    stake: int
    joined_at: int


@dataclass
class Proposal:
    proposal_id: str
    description: str
    proposer: str
    beneficiary: str
    requested_amount: int
    created_at: int
    deadline: int
    for_votes: int = 0
    against_votes: int = 0
    verification_count: int = 0
    executed: bool = False
    exists: bool = True
    voters: Dict[str, bool] = field(default_factory=dict)
    verifiers: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class ProposalView:
    """``getProposal`` result plus the derived status."""

    description: str
    for_votes: int
    against_votes: int
    deadline: int
    executed: bool
    exists: bool
    status: ProposalStatus
    proposer: str = ""
    beneficiary: str = ""
    requested_amount: int = 0
    verification_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "for_votes": self.for_votes,
            "against_votes": self.against_votes,
            "deadline": self.deadline,
            "executed": self.executed,
            "exists": self.exists,
            "status": self.status.value,
            "proposer": self.proposer,
            "beneficiary": self.beneficiary,
            "requested_amount": self.requested_amount,
            "verification_count": self.verification_count,
        }


def proposal_id_for(description: str, timestamp: int) -> str:
    """Deterministic id from (content reference, creation timestamp)."""
    ref = _sha256_hex(description.encode("utf-8"))
    return "0x" + _sha256_hex(_safe_hash_encode([ref, str(int(timestamp))]))


class ImpactDAO:
    """Membership + proposal state machine hosted on a LocalLedger."""

    def __init__(
        self,
        ledger: LocalLedger,
        *,
        address: str = "0xdao",
        minimum_stake: int = DEFAULT_MINIMUM_STAKE,
        agent_weight: Optional[int] = None,
        voting_window_seconds: int = DEFAULT_VOTING_WINDOW_SECONDS,
        verification_threshold: int = DEFAULT_VERIFICATION_THRESHOLD,
        vote_policy: VotePolicy = VotePolicy.TOKEN_WEIGHTED,
    ):
        self.ledger = ledger
        self.address = address
        self.minimum_stake = int(minimum_stake)
        self.agent_weight = int(agent_weight if agent_weight is not None else self.minimum_stake // 2)
        self.voting_window_seconds = int(voting_window_seconds)
        self.verification_threshold = max(0, int(verification_threshold))
        self.vote_policy = VotePolicy(vote_policy)

        self.members: Dict[str, Member] = {}
        self.tokens: Dict[str, int] = {}
        self.total_supply = 0
        self.total_stake = 0
        self.proposals: Dict[str, Proposal] = {}
        self.proposal_order: List[str] = []

    # Snapshot / restore (used by the host ledger on revert) -------------
    _STATE_FIELDS = ("members", "tokens", "total_supply", "total_stake", "proposals", "proposal_order")

    def _snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._STATE_FIELDS}

    def _restore(self, state: Dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)

    # Internal helpers ---------------------------------------------------
    def _require_member(self, address: str) -> Member:
        member = self.members.get(address)
        if member is None:
            raise revert("NotMember", f"{address} is not a member")
        return member

    def _require_proposal(self, proposal_id: str) -> Proposal:
        p = self.proposals.get(proposal_id)
        if p is None or not p.exists:
            raise revert("ProposalNotFound", f"unknown proposal {proposal_id}")
        return p

    def _mint_tokens(self, address: str, amount: int) -> None:
        self.tokens[address] = self.tokens.get(address, 0) + amount
        self.total_supply += amount

    def _burn_tokens(self, address: str) -> int:
        amount = self.tokens.pop(address, 0)
        self.total_supply -= amount
        return amount

    def _status_at(self, p: Optional[Proposal], now: int) -> ProposalStatus:
        if p is None or not p.exists:
            return ProposalStatus.NONEXISTENT
        if p.executed:
            return ProposalStatus.EXECUTED
        if now <= p.deadline:
            return ProposalStatus.ACTIVE
        if p.for_votes > p.against_votes:
            return ProposalStatus.PASSED
        return ProposalStatus.REJECTED

    def _treasury_available(self) -> int:
        return self.ledger.balance_of(self.address) - self.total_stake

    # Transactions (called by LocalLedger.transact) -----------------------
    def join_as_verifier(self, ctx: TxContext) -> None:
        if ctx.sender in self.members:
            raise revert("AlreadyMember")
        if ctx.value < self.minimum_stake:
            raise revert("InsufficientStake", f"stake {ctx.value} below minimum {self.minimum_stake}")
        self.members[ctx.sender] = Member(ctx.sender, ROLE_VERIFIER, ctx.value, ctx.timestamp)
        self.total_stake += ctx.value
        self._mint_tokens(ctx.sender, ctx.value)
        ctx.emit("MemberJoined", member=ctx.sender, role=ROLE_VERIFIER, stake=ctx.value)

    def join_as_agent(self, ctx: TxContext) -> None:
        if ctx.sender in self.members:
            raise revert("AlreadyMember")
        self.members[ctx.sender] = Member(ctx.sender, ROLE_AGENT, ctx.value, ctx.timestamp)
        self.total_stake += ctx.value
        self._mint_tokens(ctx.sender, self.agent_weight)
        ctx.emit("MemberJoined", member=ctx.sender, role=ROLE_AGENT, stake=ctx.value)

    def leave_dao(self, ctx: TxContext) -> int:
        member = self._require_member(ctx.sender)
        for pid in self.proposal_order:
            p = self.proposals[pid]
            if self._status_at(p, ctx.timestamp) != ProposalStatus.ACTIVE:
                continue
            if ctx.sender in p.voters or p.proposer == ctx.sender:
                raise revert("ActiveVotesPending", f"member is committed to active proposal {pid}")
        del self.members[ctx.sender]
        self._burn_tokens(ctx.sender)
        self.total_stake -= member.stake
        if member.stake:
            ctx.transfer(ctx.sender, member.stake)
        ctx.emit("MemberLeft", member=ctx.sender, refund=member.stake)
        return member.stake

    def fund(self, ctx: TxContext) -> int:
        if ctx.value > 0:
            ctx.emit("TreasuryFunded", sender=ctx.sender, amount=ctx.value)
        return self._treasury_available()

    def create_proposal(
        self,
        ctx: TxContext,
        description: str,
        requested_amount: int = 0,
        beneficiary: Optional[str] = None,
    ) -> str:
        member = self._require_member(ctx.sender)
        if member.role not in (ROLE_VERIFIER, ROLE_AGENT):
            raise revert("Unauthorized")
        if not description or not description.strip():
            raise revert("EmptyDescription")
        if int(requested_amount) < 0:
            raise ValueError("requested amount must be non-negative")
        pid = proposal_id_for(description, ctx.timestamp)
        if pid in self.proposals:
            raise revert("ProposalExists", pid)
        self.proposals[pid] = Proposal(
            proposal_id=pid,
            description=description,
            proposer=ctx.sender,
            beneficiary=beneficiary or ctx.sender,
            requested_amount=int(requested_amount),
            created_at=ctx.timestamp,
            deadline=ctx.timestamp + self.voting_window_seconds,
        )
        self.proposal_order.append(pid)
        ctx.emit(
            "ProposalCreated",
            proposal_id=pid,
            proposer=ctx.sender,
            deadline=ctx.timestamp + self.voting_window_seconds,
            requested_amount=int(requested_amount),
            beneficiary=beneficiary or ctx.sender,
        )
        return pid

    def verify_proposal(self, ctx: TxContext, proposal_id: str) -> int:
        member = self._require_member(ctx.sender)
        if member.role != ROLE_VERIFIER:
            raise revert("Unauthorized", "only verifiers may verify proposals")
        p = self._require_proposal(proposal_id)
        if ctx.timestamp > p.deadline:
            raise revert("VotingClosed")
        if ctx.sender in p.verifiers:
            raise revert("AlreadyVerified")
        p.verifiers.add(ctx.sender)
        p.verification_count += 1
        ctx.emit("ProposalVerified", proposal_id=proposal_id, verifier=ctx.sender, count=p.verification_count)
        return p.verification_count

    def vote(self, ctx: TxContext, proposal_id: str, support: bool) -> int:
        self._require_member(ctx.sender)
        p = self._require_proposal(proposal_id)
        if ctx.timestamp > p.deadline:
            raise revert("VotingClosed")
        if ctx.sender in p.voters:
            raise revert("AlreadyVoted")
        weight = self.voting_power(ctx.sender)
        if weight <= 0:
            raise revert("NoVotingPower")
        p.voters[ctx.sender] = bool(support)
        if support:
            p.for_votes += weight
        else:
            p.against_votes += weight
        ctx.emit("Voted", proposal_id=proposal_id, voter=ctx.sender, support=bool(support), weight=weight)
        return weight

    def execute_proposal(self, ctx: TxContext, proposal_id: str) -> int:
        p = self._require_proposal(proposal_id)
        if p.executed:
            raise revert("AlreadyExecuted")
        if ctx.timestamp <= p.deadline:
            raise revert("VotingOpen")
        if p.for_votes <= p.against_votes:
            raise revert("NotPassed")
        if p.verification_count < self.verification_threshold:
            raise revert("NotVerified", f"{p.verification_count} of {self.verification_threshold} verifications")
        if self._treasury_available() < p.requested_amount:
            raise revert("InsufficientFunds")
        p.executed = True
        if p.requested_amount:
            ctx.transfer(p.beneficiary, p.requested_amount)
        ctx.emit("ProposalExecuted", proposal_id=proposal_id, beneficiary=p.beneficiary, amount=p.requested_amount)
        return p.requested_amount

    # Views ----------------------------------------------------------------
    def voting_power(self, address: str) -> int:
        if address not in self.members:
            return 0
        if self.vote_policy == VotePolicy.FLAT:
            return 1
        return self.tokens.get(address, 0)

    def get_proposal(self, proposal_id: str) -> ProposalView:
        with self.ledger._lock:
            p = self.proposals.get(proposal_id)
            status = self._status_at(p, self.ledger.now())
            if p is None:
                return ProposalView("", 0, 0, 0, False, False, status)
            return ProposalView(
                description=p.description,
                for_votes=p.for_votes,
                against_votes=p.against_votes,
                deadline=p.deadline,
                executed=p.executed,
                exists=p.exists,
                status=status,
                proposer=p.proposer,
                beneficiary=p.beneficiary,
                requested_amount=p.requested_amount,
                verification_count=p.verification_count,
            )

    def proposal_status(self, proposal_id: str) -> ProposalStatus:
        return self.get_proposal(proposal_id).status

    def has_voted(self, proposal_id: str, member: str) -> bool:
        with self.ledger._lock:
            p = self.proposals.get(proposal_id)
            return bool(p and member in p.voters)

    def is_member(self, address: str) -> bool:
        with self.ledger._lock:
            return address in self.members

    def member(self, address: str) -> Optional[Member]:
        with self.ledger._lock:
            m = self.members.get(address)
            return copy.copy(m) if m else None

    def token_balance(self, address: str) -> int:
        with self.ledger._lock:
            return self.tokens.get(address, 0)

    def treasury_available(self) -> int:
        with self.ledger._lock:
            return self._treasury_available()

    def list_proposals(self) -> List[str]:
        with self.ledger._lock:
            return list(self.proposal_order)

    def session(self, sender: str) -> "DAOSession":
        return DAOSession(self, sender)


class DAOSession:
    """Caller-bound facade: each call is one ledger transaction from ``sender``."""

    def __init__(self, dao: ImpactDAO, sender: str):
        self.dao = dao
        self.sender = sender

    def _tx(self, method: Callable[..., Any], *args: Any, value: int = 0) -> Receipt:
        try:
            return self.dao.ledger.transact(self.sender, self.dao, method, *args, value=value)
        except ContractRevert as e:
            logger.info("tx %s from %s reverted: %s", method.__name__, self.sender, e.reason)
            raise

    def join_as_verifier(self, stake: int) -> Receipt:
        return self._tx(self.dao.join_as_verifier, value=stake)

    def join_as_agent(self, stake: int = 0) -> Receipt:
        return self._tx(self.dao.join_as_agent, value=stake)

    def leave_dao(self) -> Receipt:
        return self._tx(self.dao.leave_dao)

    def fund(self, amount: int) -> Receipt:
        return self._tx(self.dao.fund, value=amount)

    def create_proposal(self, description: str, requested_amount: int = 0, beneficiary: Optional[str] = None) -> str:
        return self._tx(self.dao.create_proposal, description, requested_amount, beneficiary).result

    def verify_proposal(self, proposal_id: str) -> Receipt:
        return self._tx(self.dao.verify_proposal, proposal_id)

    def vote(self, proposal_id: str, support: bool) -> Receipt:
        return self._tx(self.dao.vote, proposal_id, support)

    def execute_proposal(self, proposal_id: str) -> Receipt:
        return self._tx(self.dao.execute_proposal, proposal_id)
