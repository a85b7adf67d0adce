import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so 'import ib_policy_sync' works uninstalled
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import ib_policy_sync as ibs  # noqa: E402


class FakeSession:
    """In-memory stand-in for ComplianceSession.

    Segment and policy inventories are plain dicts shaped like the endpoint's
    JSON objects. New/Set calls mutate the policy inventory so a second run
    sees the first run's policies.
    """

    def __init__(self, segments=(), policies=(), fail=None):
        self.segment_items = [{"Name": name} for name in segments]
        self.policy_items = [dict(p) for p in policies]
        # cmdlet -> error message, or (cmdlet, name) -> error message
        self.fail = dict(fail or {})
        self.calls = []
        self.connected = False
        self.closed = False

    def connect(self):
        if "connect" in self.fail:
            raise ibs.ComplianceApiError(self.fail["connect"], 401)
        self.connected = True

    def close(self):
        self.closed = True
        self.connected = False

    def calls_to(self, cmdlet):
        return [params for name, params in self.calls if name == cmdlet]

    def invoke(self, cmdlet, parameters=None):
        parameters = parameters or {}
        self.calls.append((cmdlet, parameters))

        key = parameters.get("AssignedSegment") or parameters.get("Identity")
        message = self.fail.get((cmdlet, key)) or self.fail.get(cmdlet)
        if message:
            raise ibs.ComplianceApiError(message, 400)

        if cmdlet == "Get-OrganizationSegment":
            return list(self.segment_items)
        if cmdlet == "Get-InformationBarrierPolicy":
            return [dict(p) for p in self.policy_items]
        if cmdlet == "New-InformationBarrierPolicy":
            self.policy_items.append({
                "Identity": f"id-{parameters['AssignedSegment']}",
                "Name": parameters["Name"],
                "AssignedSegment": parameters["AssignedSegment"],
                "SegmentsBlocked": list(parameters["SegmentsBlocked"]),
                "State": parameters["State"],
            })
            return []
        if cmdlet == "Set-InformationBarrierPolicy":
            for p in self.policy_items:
                if p["Identity"] == parameters["Identity"]:
                    p["SegmentsBlocked"] = list(parameters["SegmentsBlocked"])
                    p["State"] = parameters["State"]
            return []
        return []


@pytest.fixture()
def fake_session():
    return FakeSession(segments=["corporate-A", "corporate-B", "sales", "hr"])
