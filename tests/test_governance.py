import pytest

from impact_gateway.errors import ContractRevert, InsufficientFunds, NotPassed
from impact_gateway.governance import ImpactDAO, LocalLedger, ProposalStatus, VotePolicy, proposal_id_for

WINDOW = 3600
STAKE = 100


def _revert_reason(fn, *args, **kwargs) -> str:
    with pytest.raises(ContractRevert) as ei:
        fn(*args, **kwargs)
    return ei.value.reason


@pytest.fixture
def chain():
    ledger = LocalLedger(start_time=1_000_000)
    for who in ("v1", "v2", "v3", "v4", "donor", "poor-but-funded"):
        ledger.mint(who, 1_000)
    dao = ImpactDAO(ledger, minimum_stake=STAKE, voting_window_seconds=WINDOW)
    for v in ("v1", "v2", "v3", "v4"):
        dao.session(v).join_as_verifier(STAKE)
    dao.session("agent").join_as_agent()
    return ledger, dao


def test_full_lifecycle_three_for_one_against(chain):
    ledger, dao = chain
    agent = dao.session("agent")
    pid = agent.create_proposal("Repair the flooded footbridge", requested_amount=500)
    assert dao.proposal_status(pid) == ProposalStatus.ACTIVE

    dao.session("v1").verify_proposal(pid)
    for v in ("v1", "v2", "v3"):
        dao.session(v).vote(pid, True)
    dao.session("v4").vote(pid, False)

    view = dao.get_proposal(pid)
    assert (view.for_votes, view.against_votes) == (300, 100)
    assert dao.has_voted(pid, "v4") is True
    assert dao.has_voted(pid, "agent") is False

    assert _revert_reason(dao.session("v1").execute_proposal, pid) == "VotingOpen"

    ledger.advance_time(WINDOW + 1)
    assert dao.proposal_status(pid) == ProposalStatus.PASSED

    # Stakes are not spendable treasury.
    assert dao.treasury_available() == 0
    with pytest.raises(InsufficientFunds):
        dao.session("v1").execute_proposal(pid)
    assert dao.get_proposal(pid).executed is False

    dao.session("donor").fund(1_000)
    assert dao.treasury_available() == 1_000

    before = ledger.balance_of("agent")
    receipt = dao.session("v2").execute_proposal(pid)
    assert receipt.result == 500
    assert ledger.balance_of("agent") == before + 500
    assert dao.treasury_available() == 500
    assert dao.proposal_status(pid) == ProposalStatus.EXECUTED
    assert len(ledger.events("ProposalExecuted")) == 1

    assert _revert_reason(dao.session("v1").execute_proposal, pid) == "AlreadyExecuted"


def test_tie_does_not_pass(chain):
    ledger, dao = chain
    pid = dao.session("agent").create_proposal("Tied proposal")
    dao.session("v1").verify_proposal(pid)
    dao.session("v1").vote(pid, True)
    dao.session("v2").vote(pid, False)

    ledger.advance_time(WINDOW + 1)
    assert dao.proposal_status(pid) == ProposalStatus.REJECTED
    with pytest.raises(NotPassed):
        dao.session("v1").execute_proposal(pid)


def test_unverified_proposal_cannot_execute(chain):
    ledger, dao = chain
    pid = dao.session("agent").create_proposal("Unverified proposal")
    dao.session("v1").vote(pid, True)
    ledger.advance_time(WINDOW + 1)

    assert _revert_reason(dao.session("v1").execute_proposal, pid) == "NotVerified"


def test_only_verifiers_verify(chain):
    _, dao = chain
    pid = dao.session("agent").create_proposal("Agent cannot self-verify")

    assert _revert_reason(dao.session("agent").verify_proposal, pid) == "Unauthorized"
    dao.session("v1").verify_proposal(pid)
    assert _revert_reason(dao.session("v1").verify_proposal, pid) == "AlreadyVerified"
    assert dao.get_proposal(pid).verification_count == 1


def test_voting_rules(chain):
    ledger, dao = chain
    pid = dao.session("agent").create_proposal("Voting rules")

    assert _revert_reason(dao.session("outsider").vote, pid, True) == "NotMember"
    dao.session("v1").vote(pid, True)
    assert _revert_reason(dao.session("v1").vote, pid, False) == "AlreadyVoted"

    # The deadline itself is still inside the window.
    ledger.advance_time(WINDOW)
    dao.session("v2").vote(pid, True)
    ledger.advance_time(1)
    assert _revert_reason(dao.session("v3").vote, pid, True) == "VotingClosed"
    assert _revert_reason(dao.session("v1").vote, "0xmissing", True) == "ProposalNotFound"


def test_leave_blocked_while_committed_then_refunds_stake(chain):
    ledger, dao = chain
    pid = dao.session("agent").create_proposal("Leave rules")
    dao.session("v1").vote(pid, True)

    assert _revert_reason(dao.session("v1").leave_dao) == "ActiveVotesPending"
    assert _revert_reason(dao.session("agent").leave_dao) == "ActiveVotesPending"
    assert dao.is_member("v1")

    ledger.advance_time(WINDOW + 1)
    before = ledger.balance_of("v1")
    receipt = dao.session("v1").leave_dao()
    assert receipt.result == STAKE
    assert ledger.balance_of("v1") == before + STAKE
    assert dao.is_member("v1") is False
    assert dao.voting_power("v1") == 0
    assert dao.token_balance("v1") == 0
    assert _revert_reason(dao.session("v1").leave_dao) == "NotMember"


def test_failed_join_leaves_no_partial_state(chain):
    ledger, dao = chain
    dao_balance = ledger.balance_of(dao.address)

    assert _revert_reason(dao.session("poor-but-funded").join_as_verifier, STAKE - 1) == "InsufficientStake"
    assert ledger.balance_of("poor-but-funded") == 1_000
    assert ledger.balance_of(dao.address) == dao_balance
    assert dao.is_member("poor-but-funded") is False

    assert _revert_reason(dao.session("nobody").join_as_verifier, STAKE) == "InsufficientBalance"
    assert _revert_reason(dao.session("v1").join_as_verifier, STAKE) == "AlreadyMember"


def test_agent_weight_defaults_to_half_minimum_stake(chain):
    _, dao = chain
    assert dao.voting_power("agent") == STAKE // 2
    assert dao.voting_power("v1") == STAKE
    assert dao.voting_power("outsider") == 0


def test_flat_vote_policy():
    ledger = LocalLedger(start_time=0)
    ledger.mint("whale", 10_000)
    ledger.mint("minnow", 100)
    dao = ImpactDAO(ledger, minimum_stake=100, voting_window_seconds=WINDOW, vote_policy=VotePolicy.FLAT)
    dao.session("whale").join_as_verifier(10_000)
    dao.session("minnow").join_as_verifier(100)
    dao.session("agent").join_as_agent()

    pid = dao.session("agent").create_proposal("One member, one vote")
    dao.session("whale").vote(pid, True)
    dao.session("minnow").vote(pid, False)
    view = dao.get_proposal(pid)
    assert (view.for_votes, view.against_votes) == (1, 1)


def test_proposal_creation_rules(chain):
    ledger, dao = chain
    assert _revert_reason(dao.session("outsider").create_proposal, "x") == "NotMember"
    assert _revert_reason(dao.session("agent").create_proposal, "   ") == "EmptyDescription"

    pid = dao.session("agent").create_proposal("Same text")
    assert pid == proposal_id_for("Same text", ledger.now())
    assert _revert_reason(dao.session("agent").create_proposal, "Same text") == "ProposalExists"
    assert dao.list_proposals() == [pid]

    missing = dao.get_proposal("0xmissing")
    assert missing.exists is False
    assert missing.status == ProposalStatus.NONEXISTENT
