import logging
from sqlalchemy.orm import Session
from circulation.database import transaction
from circulation.models.policy import Policy
from circulation.schemas.policy import PolicySnapshot, PolicyUpdate

logger = logging.getLogger(__name__)

POLICY_ID = 1

def _load_or_create(db: Session) -> Policy:
    policy = db.get(Policy, POLICY_ID)
    if policy is None:
        # Normally seeded at deploy time; fall back to column defaults
        logger.warning("No policy row found, creating default policy")
        policy = Policy(policy_id=POLICY_ID)
        db.add(policy)
        db.flush()
    return policy

def get_policy(db: Session) -> PolicySnapshot:
    """Read the current policy snapshot.

    Called at the start of every engine operation so limits changed by an
    admin take effect on the next request."""
    return PolicySnapshot.model_validate(_load_or_create(db))

def update_policy(db: Session, changes: PolicyUpdate) -> PolicySnapshot:
    """Apply a partial policy update and return the new snapshot."""
    provided = changes.model_dump(exclude_unset=True, exclude_none=True)
    with transaction(db):
        policy = _load_or_create(db)
        changed = {}
        for key, value in provided.items():
            before = getattr(policy, key)
            if before != value:
                changed[key] = (before, value)
                setattr(policy, key, value)

    if changed:
        logger.info(f"Policy updated. Changed fields: {', '.join(sorted(changed))}")
    else:
        logger.info("Policy update request with no actual changes")

    db.refresh(policy)
    return PolicySnapshot.model_validate(policy)
