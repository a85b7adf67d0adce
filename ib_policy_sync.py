#!/usr/bin/env python3
"""
Information Barrier Policy Sync

Creates or updates one "block" information barrier policy per organization
segment in a Microsoft 365 tenant, then starts tenant-side policy application
and appends every outcome to a CSV log.

Each segment is blocked from every other segment except those sharing its
name prefix (the text before the first "-"). Segments matching the exclusion
pattern are ignored entirely: they get no policy and are never blocked.

Data flow:
1. Security & Compliance endpoint → OAuth token (client credentials)
2. Get-OrganizationSegment / Get-InformationBarrierPolicy → inventory
3. Exclusion pattern → filtered, sorted segment list
4. New-/Set-InformationBarrierPolicy → one policy per segment
5. Start-InformationBarrierPoliciesApplication → bulk apply trigger
6. Results → <log path>/InformationBarriers-Logs.csv (and optional .xlsx report)

Usage:
    python ib_policy_sync.py --tenant-id TENANT --client-id APP --client-secret SECRET
    python ib_policy_sync.py --exclude "corporate*|hq-" --log-path ./logs --dry-run
    python ib_policy_sync.py --no-connect --no-disconnect --access-token "$TOKEN"

Environment fallbacks:
    IB_TENANT_ID, IB_CLIENT_ID, IB_CLIENT_SECRET, IB_ACCESS_TOKEN
"""

import argparse
import csv
import os
import re
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import requests
import xlsxwriter

# Security & Compliance admin endpoint
COMPLIANCE_HOST = "https://ps.compliance.protection.outlook.com"
COMPLIANCE_INVOKE_URL = f"{COMPLIANCE_HOST}/adminapi/beta/{{tenant}}/InvokeCommand"
COMPLIANCE_SCOPE = f"{COMPLIANCE_HOST}/.default"

# Azure AD token endpoint
LOGIN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

REQUEST_TIMEOUT_SECONDS = 120

# Defaults
DEFAULT_EXCLUDE_PATTERN = "corporate*|corporate-sales"
DEFAULT_LOG_PATH = os.path.join(tempfile.gettempdir(), "InformationBarriers")
LOG_FILE_NAME = "InformationBarriers-Logs.csv"
LOG_TIME_FORMAT = "%Y-%m-%d-%H%M-%S"  # yyyy-MM-dd-HHmm-ss
LOG_COLUMNS = ["Policy", "Error", "Step", "Time"]

POLICY_NAME_TEMPLATE = "Block {segment} to non-corporate segments"
APPLY_POLICY_LABEL = "All Information Barrier Policies"
SUCCESS = "Success"

# Step labels written to the log
STEP_UPDATE = "Updating Existing Policy"
STEP_CREATE = "Creating New Policy"
STEP_APPLY = "Applying Policy"

# Exit codes
EXIT_OK = 0
EXIT_POLICY_ERRORS = 1
EXIT_FATAL = 2


def log(msg: str):
    """Print and flush immediately."""
    print(msg)
    sys.stdout.flush()


def warn(msg: str):
    log(f"WARNING: {msg}")


class InformationBarrierError(Exception):
    """Base error for this tool."""


class ConfigurationError(InformationBarrierError):
    """Bad command-line input: malformed pattern, missing credentials."""


class ComplianceApiError(InformationBarrierError):
    """The compliance endpoint rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class Segment:
    """Organization segment."""
    name: str


@dataclass
class Policy:
    """Information barrier policy as returned by Get-InformationBarrierPolicy."""
    identity: str
    name: str = ""
    assigned_segment: str = ""
    segments_blocked: list = field(default_factory=list)
    state: str = ""


@dataclass
class LogEntry:
    """One row of the CSV log."""
    policy: str
    error: str
    step: str
    time: str

    def as_row(self) -> dict:
        return {"Policy": self.policy, "Error": self.error, "Step": self.step, "Time": self.time}


@dataclass
class PolicyResult:
    """Outcome of one create, update or apply attempt."""
    policy: str
    step: str
    error: Optional[str] = None
    segment: str = ""
    segments_blocked: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_log_entry(self, when: Optional[datetime] = None) -> LogEntry:
        when = when or datetime.now()
        return LogEntry(
            policy=self.policy,
            error=SUCCESS if self.ok else self.error,
            step=self.step,
            time=when.strftime(LOG_TIME_FORMAT),
        )


# =========================================================================
# Session
# =========================================================================
class ComplianceSession:
    """Explicit handle to the Security & Compliance admin endpoint.

    Either call connect() to acquire a token with the client-credentials
    grant, or pass access_token for a session managed by the caller.
    """

    def __init__(self, tenant_id: str, client_id: str = "", client_secret: str = "",
                 access_token: str = ""):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.http = requests.Session()
        self.http.headers.update({
            "User-Agent": "IB-Policy-Sync/1.0",
            "Accept": "application/json",
        })
        if access_token:
            self.http.headers["Authorization"] = f"Bearer {access_token}"

    @property
    def connected(self) -> bool:
        return bool(self.access_token)

    @property
    def invoke_url(self) -> str:
        return COMPLIANCE_INVOKE_URL.format(tenant=self.tenant_id)

    def connect(self):
        """Acquire an access token for the compliance endpoint."""
        if not (self.client_id and self.client_secret):
            raise ConfigurationError("client id and client secret are required to connect")

        try:
            response = self.http.post(
                LOGIN_URL.format(tenant=self.tenant_id),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": COMPLIANCE_SCOPE,
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise ComplianceApiError(f"token request failed: {e}") from e

        if response.status_code != 200:
            raise ComplianceApiError(
                f"token request failed: {_error_message(response)}", response.status_code
            )

        token = response.json().get("access_token", "")
        if not token:
            raise ComplianceApiError("token response did not contain an access token")

        self.access_token = token
        self.http.headers["Authorization"] = f"Bearer {token}"

    def close(self):
        """Drop the token and close the underlying HTTP session."""
        self.access_token = ""
        self.http.headers.pop("Authorization", None)
        self.http.close()

    def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list:
        """Run one cmdlet and return the objects it produced, following paging."""
        if not self.connected:
            raise ComplianceApiError(f"{cmdlet}: session is not connected")

        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        headers = {"X-CmdletName": cmdlet, "X-ResponseFormat": "json"}

        results = []
        url = self.invoke_url
        while url:
            try:
                response = self.http.post(url, json=body, headers=headers,
                                          timeout=REQUEST_TIMEOUT_SECONDS)
            except requests.RequestException as e:
                raise ComplianceApiError(f"{cmdlet}: {e}") from e

            if response.status_code >= 400:
                raise ComplianceApiError(f"{cmdlet}: {_error_message(response)}",
                                         response.status_code)
            if not response.content:
                break

            try:
                data = response.json()
            except ValueError as e:
                raise ComplianceApiError(f"{cmdlet}: invalid JSON response") from e

            if not isinstance(data, dict):
                raise ComplianceApiError(f"{cmdlet}: unexpected response shape")
            values = data.get("value") or []
            if not isinstance(values, list) or not all(isinstance(v, dict) for v in values):
                raise ComplianceApiError(f"{cmdlet}: unexpected response shape")

            results.extend(values)
            url = data.get("@odata.nextLink")

        return results


def _error_message(response: requests.Response) -> str:
    """Pull the free-text message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"
    if not isinstance(data, dict):
        return str(data)

    error = data.get("error", data)
    if isinstance(error, dict):
        # Compliance endpoint nests the cmdlet error under innererror
        inner = error.get("details") or error.get("innererror") or {}
        if isinstance(inner, list) and inner:
            inner = inner[0]
        if isinstance(inner, dict) and inner.get("message"):
            return inner["message"]
        return error.get("message") or error.get("error_description") or f"HTTP {response.status_code}"
    return data.get("error_description") or str(error)


# =========================================================================
# Remote operations
# =========================================================================
def get_segments(session: ComplianceSession) -> list:
    """List organization segments."""
    return [Segment(name=item.get("Name", "")) for item in session.invoke("Get-OrganizationSegment")]


def get_policies(session: ComplianceSession) -> list:
    """List existing information barrier policies."""
    policies = []
    for item in session.invoke("Get-InformationBarrierPolicy"):
        blocked = item.get("SegmentsBlocked") or []
        if isinstance(blocked, str):
            blocked = [blocked]
        policies.append(Policy(
            identity=str(item.get("Identity") or item.get("Guid") or item.get("Name", "")),
            name=item.get("Name") or "",
            assigned_segment=item.get("AssignedSegment") or "",
            segments_blocked=list(blocked),
            state=item.get("State", ""),
        ))
    return policies


def new_policy(session: ComplianceSession, name: str, assigned_segment: str,
               segments_blocked: list, state: str = "Active"):
    session.invoke("New-InformationBarrierPolicy", {
        "Name": name,
        "AssignedSegment": assigned_segment,
        "SegmentsBlocked": segments_blocked,
        "State": state,
        "Force": True,
        "ErrorAction": "Stop",
    })


def set_policy(session: ComplianceSession, identity: str, segments_blocked: list,
               state: str = "Active"):
    session.invoke("Set-InformationBarrierPolicy", {
        "Identity": identity,
        "SegmentsBlocked": segments_blocked,
        "State": state,
        "Force": True,
        "ErrorAction": "Stop",
    })


# =========================================================================
# Filtering and block lists
# =========================================================================
def filter_segments(segments: list, pattern: str) -> list:
    """Drop segments whose name matches pattern and sort the rest by name."""
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"invalid exclusion pattern {pattern!r}: {e}") from e

    kept = [s for s in segments if not regex.search(s.name)]
    return sorted(kept, key=lambda s: s.name.lower())


def segment_prefix(name: str) -> str:
    """Text before the first "-", or the whole name."""
    return name.split("-", 1)[0]


def compute_blocked_segments(segment: Segment, segments: list) -> list:
    """Names of the segments that segment's policy should block.

    Segments whose prefix equals this one's, ignoring case, form one group
    and stay unblocked: "hr" leaves "HR-payroll" alone but blocks "shred-team".
    """
    name = segment.name.casefold()
    prefix = segment_prefix(name)
    return [
        other.name for other in segments
        if other.name.casefold() != name
        and segment_prefix(other.name.casefold()) != prefix
    ]


def policy_name_for(segment: Segment) -> str:
    return POLICY_NAME_TEMPLATE.format(segment=segment.name)


def find_policy(policies: list, segment: Segment) -> Optional[Policy]:
    """Existing policy assigned to segment, if any."""
    wanted = segment.name.casefold()
    for policy in policies:
        if policy.assigned_segment.casefold() == wanted:
            return policy
    return None


def policy_is_current(policy: Policy, segments_blocked: list) -> bool:
    """True when policy is active and already blocks exactly segments_blocked."""
    current = {name.casefold() for name in policy.segments_blocked}
    wanted = {name.casefold() for name in segments_blocked}
    return policy.state.casefold() == "active" and current == wanted


# =========================================================================
# Reconciliation
# =========================================================================
def reconcile_segment(session: ComplianceSession, segment: Segment, segments: list,
                      policies: list) -> PolicyResult:
    """Create or update the block policy for one segment.

    Errors are captured in the returned result rather than raised.
    """
    existing = find_policy(policies, segment)
    if existing:
        result = PolicyResult(policy=existing.name or policy_name_for(segment),
                              step=STEP_UPDATE, segment=segment.name)
    else:
        result = PolicyResult(policy=policy_name_for(segment), step=STEP_CREATE,
                              segment=segment.name)

    try:
        result.segments_blocked = compute_blocked_segments(segment, segments)
        if existing:
            set_policy(session, existing.identity, result.segments_blocked)
        else:
            new_policy(session, result.policy, segment.name, result.segments_blocked)
    except InformationBarrierError as e:
        result.error = str(e)

    return result


def reconcile_segments(session: ComplianceSession, segments: list, policies: list,
                       on_result: Optional[Callable[[PolicyResult], None]] = None) -> list:
    """Reconcile every segment, handing each result to on_result as it completes."""
    results = []
    for idx, segment in enumerate(segments, 1):
        result = reconcile_segment(session, segment, segments, policies)
        action = "update" if result.step == STEP_UPDATE else "create"
        status = "ok" if result.ok else "FAILED"
        log(f"    [{idx}/{len(segments)}] {segment.name}: {action} {status}")
        if on_result:
            on_result(result)
        results.append(result)
    return results


def start_policy_application(session: ComplianceSession) -> PolicyResult:
    """Ask the tenant to start applying all pending policy changes."""
    result = PolicyResult(policy=APPLY_POLICY_LABEL, step=STEP_APPLY)
    try:
        session.invoke("Start-InformationBarrierPoliciesApplication", {"ErrorAction": "Stop"})
    except InformationBarrierError as e:
        result.error = str(e)
    return result


# =========================================================================
# Output
# =========================================================================
class PolicyLog:
    """Append-only CSV log of policy outcomes."""

    def __init__(self, log_dir: str):
        self.log_dir = log_dir
        self.path = os.path.join(log_dir, LOG_FILE_NAME)

    def prepare(self):
        """Create the log directory and make sure the log file can be appended to."""
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(self.path, "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise ConfigurationError(f"log file {self.path} is not writable: {e}") from e

    def write(self, entry: LogEntry):
        os.makedirs(self.log_dir, exist_ok=True)
        new_file = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        with open(self.path, "a", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=LOG_COLUMNS)
            if new_file:
                writer.writeheader()
            writer.writerow(entry.as_row())

    def record(self, result: PolicyResult) -> LogEntry:
        """Write one result, warning on the console when it failed.

        A failed write is reported on the console and does not stop the run.
        """
        entry = result.to_log_entry()
        if not result.ok:
            warn(f"{result.step} failed for '{result.policy}': {result.error}")
        try:
            self.write(entry)
        except OSError as e:
            warn(f"could not write log row for '{result.policy}' to {self.path}: {e}")
        return entry


def write_report(output_file: str, segments: list, results: list):
    """Excel workbook with per-policy outcomes and the segment block matrix."""
    log(f"\nGenerating report: {output_file}")

    wb = xlsxwriter.Workbook(output_file)

    header_format = wb.add_format({
        'bold': True,
        'font_color': 'white',
        'bg_color': '#4472C4',
        'align': 'center',
        'valign': 'vcenter',
        'text_wrap': True,
        'border': 1
    })
    cell_format = wb.add_format({
        'valign': 'top',
        'text_wrap': True,
        'border': 1
    })
    error_format = wb.add_format({
        'valign': 'top',
        'text_wrap': True,
        'border': 1,
        'font_color': '#C00000'
    })
    blocked_format = wb.add_format({
        'align': 'center',
        'border': 1,
        'bg_color': '#F4B084'
    })

    # === Policies Sheet ===
    ws1 = wb.add_worksheet("Policies")
    headers1 = ["Segment", "Policy", "Step", "Outcome", "Blocked Count", "Segments Blocked"]
    for col, h in enumerate(headers1):
        ws1.write(0, col, h, header_format)

    segment_results = [r for r in results if r.step != STEP_APPLY]
    for row_idx, r in enumerate(segment_results, 1):
        values = [
            r.segment, r.policy, r.step, SUCCESS if r.ok else r.error,
            len(r.segments_blocked), ", ".join(r.segments_blocked)
        ]
        for col, val in enumerate(values):
            ws1.write(row_idx, col, val, cell_format if r.ok else error_format)

    widths1 = [25, 50, 25, 40, 14, 80]
    for col, w in enumerate(widths1):
        ws1.set_column(col, col, w)
    ws1.freeze_panes(1, 1)
    ws1.autofilter(0, 0, len(segment_results), len(headers1) - 1)

    # === Block Matrix Sheet ===
    # Row segment blocks column segment
    ws2 = wb.add_worksheet("Block Matrix")
    names = [s.name for s in segments]
    blocked_by = {r.segment: set(r.segments_blocked) for r in segment_results}

    ws2.write(0, 0, "Segment", header_format)
    for col, name in enumerate(names, 1):
        ws2.write(0, col, name, header_format)
    for row_idx, name in enumerate(names, 1):
        ws2.write(row_idx, 0, name, header_format)
        blocked = blocked_by.get(name, set())
        for col, other in enumerate(names, 1):
            if other in blocked:
                ws2.write(row_idx, col, "X", blocked_format)
            else:
                ws2.write_blank(row_idx, col, None, cell_format)

    ws2.set_column(0, 0, 25)
    ws2.set_column(1, max(len(names), 1), 14)
    ws2.freeze_panes(1, 1)

    wb.close()
    log(f"  Saved: {len(segment_results)} policies, {len(names)} segments")


# =========================================================================
# Orchestration
# =========================================================================
class PolicySync:
    """Runs the full sync against one session."""

    def __init__(self, session: ComplianceSession, exclude_pattern: str = DEFAULT_EXCLUDE_PATTERN,
                 log_path: str = DEFAULT_LOG_PATH, connect: bool = True,
                 disconnect: bool = True, dry_run: bool = False,
                 report_file: Optional[str] = None):
        self.session = session
        self.exclude_pattern = exclude_pattern
        self.policy_log = PolicyLog(log_path)
        self.connect = connect
        self.disconnect = disconnect
        self.dry_run = dry_run
        self.report_file = report_file

        self.segments: list = []
        self.policies: list = []
        self.results: list = []

    def fetch_inventory(self):
        log("\n[2/6] Fetching segments and policies...")
        all_segments = get_segments(self.session)
        self.policies = get_policies(self.session)
        log(f"  Segments: {len(all_segments)}")
        log(f"  Existing policies: {len(self.policies)}")

        log(f"\n[3/6] Excluding segments matching '{self.exclude_pattern}'...")
        self.segments = filter_segments(all_segments, self.exclude_pattern)
        log(f"  Excluded: {len(all_segments) - len(self.segments)}")
        log(f"  Remaining: {len(self.segments)}")

    def plan(self):
        """Print the create/update actions a real run would take."""
        log("\n[4/6] Planned policy changes (dry run)...")
        for segment in self.segments:
            existing = find_policy(self.policies, segment)
            result = PolicyResult(
                policy=(existing.name if existing else "") or policy_name_for(segment),
                step=STEP_UPDATE if existing else STEP_CREATE,
                segment=segment.name,
                segments_blocked=compute_blocked_segments(segment, self.segments),
            )
            blocked = ", ".join(result.segments_blocked) or "(none)"
            if not existing:
                log(f"  create {result.policy}: blocks {blocked}")
            elif policy_is_current(existing, result.segments_blocked):
                log(f"  update {result.policy}: no change")
            else:
                current = ", ".join(existing.segments_blocked) or "(none)"
                log(f"  update {result.policy}: blocks {blocked} "
                    f"(currently {current}, {existing.state or 'unknown state'})")
            self.results.append(result)

    def record(self, result: PolicyResult):
        self.policy_log.record(result)
        self.results.append(result)

    def reconcile(self):
        log("\n[4/6] Creating and updating policies...")
        reconcile_segments(self.session, self.segments, self.policies, on_result=self.record)

    def apply(self):
        log("\n[5/6] Starting policy application...")
        result = start_policy_application(self.session)
        self.record(result)
        if result.ok:
            log("  Application started; the tenant may take hours to finish")

    def run(self) -> int:
        """Run the sync and return the process exit code."""
        log("=" * 70)
        log("Information Barrier Policy Sync")
        log(f"Log file: {self.policy_log.path}")
        log("=" * 70)

        try:
            try:
                if not self.dry_run:
                    self.policy_log.prepare()
                if self.connect:
                    log("\n[1/6] Connecting to Security & Compliance...")
                    self.session.connect()
                self.fetch_inventory()
            except InformationBarrierError as e:
                warn(str(e))
                return EXIT_FATAL

            if self.dry_run:
                self.plan()
            else:
                self.reconcile()
                self.apply()
            if self.report_file:
                write_report(self.report_file, self.segments, self.results)
        finally:
            if self.disconnect:
                log("\n[6/6] Disconnecting...")
                self.session.close()

        failed = [r for r in self.results if not r.ok]
        log("\n" + "=" * 70)
        log(f"Complete! {len(self.results) - len(failed)} succeeded, {len(failed)} failed")
        log("=" * 70)
        return EXIT_POLICY_ERRORS if failed else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create information barrier block policies per segment")
    parser.add_argument("-e", "--exclude", default=DEFAULT_EXCLUDE_PATTERN,
                        help="regular expression of segment names to leave out")
    parser.add_argument("--connect", action=argparse.BooleanOptionalAction, default=True,
                        help="acquire a token before running")
    parser.add_argument("--disconnect", action=argparse.BooleanOptionalAction, default=True,
                        help="close the session when done")
    parser.add_argument("-l", "--log-path", default=DEFAULT_LOG_PATH,
                        help=f"directory for {LOG_FILE_NAME}")
    parser.add_argument("--tenant-id", default=os.environ.get("IB_TENANT_ID", ""))
    parser.add_argument("--client-id", default=os.environ.get("IB_CLIENT_ID", ""))
    parser.add_argument("--client-secret", default=os.environ.get("IB_CLIENT_SECRET", ""))
    parser.add_argument("--access-token", default=os.environ.get("IB_ACCESS_TOKEN", ""),
                        help="token for a session managed outside this script")
    parser.add_argument("--dry-run", action="store_true",
                        help="show planned changes without writing anything")
    parser.add_argument("-r", "--report", default=None,
                        help="also write an Excel report to this file")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.tenant_id:
        warn("tenant id is required (--tenant-id or IB_TENANT_ID)")
        return EXIT_FATAL
    if not args.connect and not args.access_token:
        warn("--no-connect needs an existing session token (--access-token or IB_ACCESS_TOKEN)")
        return EXIT_FATAL

    session = ComplianceSession(
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        client_secret=args.client_secret,
        access_token=args.access_token,
    )
    return PolicySync(
        session,
        exclude_pattern=args.exclude,
        log_path=args.log_path,
        connect=args.connect,
        disconnect=args.disconnect,
        dry_run=args.dry_run,
        report_file=args.report,
    ).run()


if __name__ == "__main__":
    sys.exit(main())
