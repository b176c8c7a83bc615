from __future__ import annotations

import os
from pathlib import Path

BUNDLED_POLICY_DIR = Path(__file__).resolve().parent / "policies"
DEFAULT_POLICY = "dockerfile"

POLICY_ENV = "GATECHECK_POLICY"
EXCEPTIONS_ENV = "GATECHECK_EXCEPTIONS"
_LOCAL_POLICY = Path("gatecheck.yaml")


def bundled_policies() -> list[str]:
    return sorted(p.stem for p in BUNDLED_POLICY_DIR.glob("*.yaml"))


class PolicyLocator:
    """Resolves which policy file to load.

    Order: explicit value, $GATECHECK_POLICY, ./gatecheck.yaml, bundled default.
    A bare name such as "terraform" selects the bundled policy of that name.
    """

    def __init__(self, explicit: str | None = None) -> None:
        self._explicit = explicit

    def resolve(self) -> Path:
        if self._explicit:
            return _as_policy_path(self._explicit)

        env_value = os.environ.get(POLICY_ENV)
        if env_value:
            return _as_policy_path(env_value)

        if _LOCAL_POLICY.is_file():
            return _LOCAL_POLICY

        return BUNDLED_POLICY_DIR / f"{DEFAULT_POLICY}.yaml"

    def searched_locations(self) -> list[str]:
        """Return the candidates that would be checked, in order."""
        locations: list[str] = []
        if self._explicit:
            locations.append(self._explicit)
        env_value = os.environ.get(POLICY_ENV)
        if env_value:
            locations.append(f"${POLICY_ENV} ({env_value})")
        locations.append(str(_LOCAL_POLICY))
        locations.append(f"bundled:{DEFAULT_POLICY}")
        return locations


def resolve_exceptions_path(explicit: str | None = None) -> Path | None:
    value = explicit or os.environ.get(EXCEPTIONS_ENV)
    return Path(value) if value else None


def _as_policy_path(value: str) -> Path:
    path = Path(value)
    if not path.suffix and len(path.parts) == 1 and value in bundled_policies():
        return BUNDLED_POLICY_DIR / f"{value}.yaml"
    return path
