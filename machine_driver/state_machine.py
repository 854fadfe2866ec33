from machine_driver.models import ProvisioningState


S = ProvisioningState

# Provisioning order. A retry resumes from the last persisted state.
PROVISIONING_ORDER: list[str] = [
    S.UNCONFIGURED.value,
    S.CONNECTED.value,
    S.PRECHECKED.value,
    S.VOLUME_CREATED.value,
    S.CREATED.value,
    S.STARTED.value,
    S.GUEST_REACHABLE.value,
    S.TRUST_INJECTED.value,
]

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    S.UNCONFIGURED.value: {S.CONNECTED.value, S.REMOVED.value},
    S.CONNECTED.value: {S.PRECHECKED.value, S.REMOVED.value},
    S.PRECHECKED.value: {S.VOLUME_CREATED.value, S.REMOVED.value},
    # discarding an orphaned volume drops the record back to PRECHECKED
    S.VOLUME_CREATED.value: {S.CREATED.value, S.PRECHECKED.value, S.REMOVED.value},
    S.CREATED.value: {S.STARTED.value, S.REMOVED.value},
    S.STARTED.value: {S.GUEST_REACHABLE.value, S.REMOVED.value},
    S.GUEST_REACHABLE.value: {S.TRUST_INJECTED.value, S.REMOVED.value},
    S.TRUST_INJECTED.value: {S.REMOVED.value},
    # a removed machine name can be provisioned again from scratch
    S.REMOVED.value: {S.UNCONFIGURED.value},
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def reached(current: str, target: str) -> bool:
    """True when ``current`` is at or past ``target`` in provisioning order."""
    if current not in PROVISIONING_ORDER or target not in PROVISIONING_ORDER:
        return False
    return PROVISIONING_ORDER.index(current) >= PROVISIONING_ORDER.index(target)
