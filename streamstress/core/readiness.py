"""Readiness gate: side effects pinned to lifecycle stages.

Faults are injected as policy content, never as gate failures; the
transport then fails connections on its own and the retry controller sees
ordinary terminal outcomes.
"""

from __future__ import annotations

import logging
from typing import Callable

from streamstress.core.errors import ConfigurationError
from streamstress.core.policy import PolicyDocument
from streamstress.core.system_state import AUTH_IDX_ROOT, BlobType, GateDecision, LifecycleStage, SystemBlobStore

# The overridden endpoint answers with a redirect, which looks like a portal.
CAPTIVE_PORTAL_OVERLAY = {
    "s": [{"captive_portal_detect": {"endpoint": "google.com", "http_url": "/", "port": 80}}],
}

# Nothing listens on the overridden port.
NO_INTERNET_OVERLAY = {
    "s": [{"captive_portal_detect": {"endpoint": "warmcat.com", "http_url": "/", "port": 999}}],
}

CANNED_ROOT_TOKEN_PAYLOAD = (
    b"grant_type=refresh_token"
    b"&refresh_token=Atzr|streamstress-canned-root-token"
    b"&client_id=streamstress.application-oa2-client.canned"
)

_POLICY_STAGES = (LifecycleStage.INITIALIZED, LifecycleStage.POLICY_VALID)


class ReadinessGate:
    name = "app"

    def __init__(
        self,
        policy: PolicyDocument,
        blobs: SystemBlobStore,
        on_operational: Callable[[], object],
        force_portal: bool = False,
        force_no_internet: bool = False,
        credential_payload: bytes = CANNED_ROOT_TOKEN_PAYLOAD,
        logger: logging.Logger | None = None,
    ) -> None:
        if force_portal and force_no_internet:
            raise ConfigurationError("captive portal and no internet simulation are mutually exclusive")
        self._policy = policy
        self._blobs = blobs
        self._on_operational = on_operational
        self._force_portal = force_portal
        self._force_no_internet = force_no_internet
        self._credential_payload = credential_payload
        self._logger = logger or logging.getLogger("streamstress.gate")
        self._applied: set[LifecycleStage] = set()
        self._fault_policy_handled = False

    @property
    def applied_stages(self) -> frozenset[LifecycleStage]:
        return frozenset(self._applied)

    def on_stage_transition(self, current: LifecycleStage, target: LifecycleStage) -> GateDecision:
        if target in _POLICY_STAGES:
            if current != target:
                return GateDecision()
            return self._once(target, self._inject_fault_policy)
        if target == LifecycleStage.REGISTERED:
            # Write-once is keyed on the blob itself, not on the stage.
            decision = self._seed_credentials()
            if decision.side_effect_applied:
                self._applied.add(target)
            return decision
        if target == LifecycleStage.OPERATIONAL:
            if current != target:
                return GateDecision()
            return self._once(target, self._start_attempts)
        return GateDecision()

    def _once(self, stage: LifecycleStage, effect: Callable[[], GateDecision]) -> GateDecision:
        if stage in self._applied:
            return GateDecision(detail=f"{stage.name.lower()} already handled")
        self._applied.add(stage)
        return effect()

    def _inject_fault_policy(self) -> GateDecision:
        # The overlay lands once, on whichever policy stage is reached first.
        if self._fault_policy_handled:
            return GateDecision(detail="fault policy already handled")
        self._fault_policy_handled = True
        if self._force_portal:
            self._policy.overlay(CAPTIVE_PORTAL_OVERLAY)
            self._logger.info("captive portal simulation: connectivity check redirected")
            return GateDecision(side_effect_applied=True, detail="captive_portal")
        if self._force_no_internet:
            self._policy.overlay(NO_INTERNET_OVERLAY)
            self._logger.info("no internet simulation: connectivity check pointed at a dead port")
            return GateDecision(side_effect_applied=True, detail="no_internet")
        return GateDecision()

    def _seed_credentials(self) -> GateDecision:
        if self._blobs.size(BlobType.AUTH, AUTH_IDX_ROOT):
            return GateDecision(detail="credential blob already present")
        self._blobs.direct_set(BlobType.AUTH, self._credential_payload, AUTH_IDX_ROOT)
        self._logger.info("seeded canned root token (%d bytes)", len(self._credential_payload))
        return GateDecision(side_effect_applied=True, detail="credentials")

    def _start_attempts(self) -> GateDecision:
        self._logger.info("system operational, starting first attempt")
        self._on_operational()
        return GateDecision(side_effect_applied=True, detail="operational")
