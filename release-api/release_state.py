from typing import Optional


IN_FLIGHT_STATES = {"PENDING", "PREREQUISITES_READY", "APPLYING", "HEALTH_CHECKING", "ROLLING_BACK"}
TERMINAL_STATES = {"SUCCEEDED", "FAILED", "ROLLED_BACK"}

TRANSITIONS = {
    "PENDING": {"PREREQUISITES_READY", "FAILED"},
    "PREREQUISITES_READY": {"APPLYING", "FAILED"},
    "APPLYING": {"HEALTH_CHECKING", "ROLLING_BACK", "FAILED"},
    # A passed gate either hands over to the next service or ends the release.
    "HEALTH_CHECKING": {"APPLYING", "SUCCEEDED", "ROLLING_BACK", "FAILED"},
    "ROLLING_BACK": {"ROLLED_BACK", "FAILED"},
}

STATE_LABELS = {
    "PENDING": "Release accepted",
    "PREREQUISITES_READY": "Cluster prerequisites ready",
    "APPLYING": "Applying resources",
    "HEALTH_CHECKING": "Waiting for health gate",
    "ROLLING_BACK": "Rolling back to last known good release",
    "SUCCEEDED": "Release succeeded",
    "ROLLED_BACK": "Release rolled back",
    "FAILED": "Release failed",
}


def is_terminal(state: Optional[str]) -> bool:
    return state in TERMINAL_STATES


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def outcome_for_state(state: Optional[str]) -> Optional[str]:
    if state in TERMINAL_STATES:
        return state
    return None
