"""
Log line normalization.

Turns one raw line from a configured source into a typed Event, or skips it.
Every source type maps to exactly one parser variant:

    bash_history  -> BashHistoryParser
    syslog / auth -> SyslogParser (parameterised by source tag)
    auditd        -> AuditdParser

New sources add a variant to PARSERS; nothing else branches on source type.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Dict, Optional

from siem_agent.errors import UnknownSourceTypeError
from siem_agent.events import Event, Severity, new_event


class LogParser(ABC):
    """Capability shared by all parsers: parse(line, hostname) -> Event or None."""

    source_type = "unknown"

    @abstractmethod
    def parse(self, line: str, hostname: str) -> Optional[Event]:
        """Return the normalized event, or None when the line should be skipped."""


# ============================================================================
# DANGEROUS COMMAND PATTERNS
# ============================================================================

SHELL_DANGEROUS_PATTERNS = (
    "rm -rf",
    "dd if=",
    "mkfs",
    "fdisk",
    "passwd root",
    "> /dev/",
    "chmod 777",
)

SUDO_DANGEROUS_PATTERNS = (
    "rm -rf",
    "dd if=",
    "mkfs",
    "fdisk",
    "passwd",
    "userdel",
    "shutdown",
    "reboot",
    "halt",
)


def contains_any(text: str, patterns) -> bool:
    return any(p in text for p in patterns)


# ============================================================================
# BASH HISTORY
# ============================================================================

HISTORY_TIMESTAMP_RE = re.compile(r'^#\d{9,}$')


class BashHistoryParser(LogParser):
    """Parses ~/.bash_history, one command per line."""

    source_type = "bash_history"

    def parse(self, line: str, hostname: str) -> Optional[Event]:
        line = line.strip()
        # HISTTIMEFORMAT writes "#<epoch>" before each command
        if not line or HISTORY_TIMESTAMP_RE.match(line):
            return None

        event_type, severity = "command_executed", Severity.LOW
        if line.startswith("sudo "):
            event_type, severity = "privileged_command", Severity.MEDIUM
        if contains_any(line, SHELL_DANGEROUS_PATTERNS):
            event_type, severity = "dangerous_command", Severity.HIGH

        user = "root" if "sudo su" in line else None

        return new_event(
            self.source_type, event_type, severity, line, hostname,
            command=line, user=user,
        )


# ============================================================================
# SYSLOG / AUTH LOG
# ============================================================================

SYSLOG_LINE_RE = re.compile(
    r'^(?:(?P<bsd_ts>[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})|(?P<iso_ts>\S+))\s+'
    r'(?P<host>\S+)\s+'
    r'(?P<proc>[^:\[\s]+)(?:\[(?P<pid>\d+)\])?\s*:\s*'
    r'(?P<msg>.+)$'
)

# alice : TTY=pts/0 ; PWD=/home/alice ; USER=root ; COMMAND=/usr/bin/tail
SUDO_RE = re.compile(r'(\w+)\s*:.*USER=(\w+)\s*;\s*COMMAND=(.+)$')

MESSAGE_RULES = (
    ("session opened", "session_opened", Severity.MEDIUM),
    ("session closed", "session_closed", Severity.LOW),
    ("authentication failure", "auth_failure", Severity.HIGH),
    ("Accepted password", "user_login", Severity.MEDIUM),
    ("Accepted publickey", "user_login", Severity.MEDIUM),
    ("Failed password", "login_failed", Severity.HIGH),
)


class SyslogParser(LogParser):
    """Parses /var/log/syslog and /var/log/auth.log style lines."""

    def __init__(self, source_type: str = "syslog"):
        self.source_type = source_type

    def parse(self, line: str, hostname: str) -> Optional[Event]:
        line = line.strip()
        if not line:
            return None

        match = SYSLOG_LINE_RE.match(line)
        if not match:
            return None

        process = match.group("proc")
        pid = match.group("pid")
        message = match.group("msg")

        event_type, severity = self.classify(process, message)
        event = new_event(
            self.source_type, event_type, severity, line, hostname,
            process=f"{process}[{pid}]" if pid else process,
        )

        if process == "sudo" and "COMMAND=" in message:
            sudo = SUDO_RE.search(message)
            if sudo:
                event = replace(event, user=sudo.group(2), command=sudo.group(3).strip())

        return event

    @staticmethod
    def classify(process: str, message: str):
        """Map process and message text to (event_type, severity)."""
        event_type, severity = "system_event", Severity.LOW

        for needle, rule_type, rule_severity in MESSAGE_RULES:
            if needle in message:
                event_type, severity = rule_type, rule_severity
                break

        if process == "sudo":
            event_type, severity = "sudo_command", Severity.MEDIUM
            if contains_any(message, SUDO_DANGEROUS_PATTERNS):
                event_type, severity = "dangerous_sudo_command", Severity.HIGH
        elif process == "systemd":
            event_type, severity = "systemd_event", Severity.LOW
        elif process == "sshd":
            event_type, severity = "ssh_event", Severity.MEDIUM

        return event_type, severity


# ============================================================================
# AUDITD
# ============================================================================

AUDIT_TYPE_RE = re.compile(r'type=(\w+)')
AUDIT_FIELD_RE = re.compile(r'(\w+)=([^\s]+)')

AUDIT_EVENT_TYPES = {
    "SYSCALL": "system_call",
    "EXECVE": "process_execution",
    "USER_LOGIN": "user_login",
    "USER_LOGOUT": "user_logout",
    "USER_AUTH": "user_authentication",
    "USER_ACCT": "user_account",
    "CRED_ACQ": "credential_acquisition",
    "CRED_DISP": "credential_disposal",
    "USER_START": "user_session_start",
    "USER_END": "user_session_end",
    "USER_CMD": "user_command",
    "PATH": "file_access",
    "CWD": "working_directory",
    "PROCTITLE": "process_title",
}

AUDIT_PRIORITY_TYPES = {"USER_LOGIN", "USER_AUTH", "CRED_ACQ", "CRED_DISP", "USER_CMD", "EXECVE"}

# execve, execveat, open (x86_64)
AUDIT_WATCHED_SYSCALLS = ("syscall=59", "syscall=322", "syscall=2")


class AuditdParser(LogParser):
    """Parses /var/log/audit/audit.log records."""

    source_type = "auditd"

    def parse(self, line: str, hostname: str) -> Optional[Event]:
        # type=SYSCALL msg=audit(1234567890.123:456): arch=c000003e syscall=59 success=yes
        line = line.strip()
        if not line:
            return None

        match = AUDIT_TYPE_RE.search(line)
        audit_type = match.group(1) if match else "UNKNOWN"
        fields = dict(AUDIT_FIELD_RE.findall(line))

        user = fields.get("uid") or fields.get("auid")
        process = fields.get("comm") or fields.get("exe")
        command = fields.get("a0") if audit_type == "EXECVE" else None

        return new_event(
            self.source_type,
            AUDIT_EVENT_TYPES.get(audit_type, "audit_event"),
            self.severity_for(audit_type, line),
            line,
            hostname,
            user=user,
            process=process.strip('"') if process else None,
            command=command.strip('"') if command else None,
        )

    @staticmethod
    def severity_for(audit_type: str, line: str) -> Severity:
        if audit_type in AUDIT_PRIORITY_TYPES:
            if "res=failed" in line or "success=no" in line:
                return Severity.HIGH
            return Severity.MEDIUM
        if audit_type == "SYSCALL" and any(s in line.split() for s in AUDIT_WATCHED_SYSCALLS):
            return Severity.MEDIUM
        return Severity.LOW


# ============================================================================
# REGISTRY
# ============================================================================

PARSERS: Dict[str, Callable[[], LogParser]] = {
    "bash_history": BashHistoryParser,
    "syslog": lambda: SyslogParser("syslog"),
    "auth": lambda: SyslogParser("auth"),
    "auditd": AuditdParser,
}


def build_parser(source_type: str) -> LogParser:
    """Instantiate the parser registered for a source type."""
    try:
        factory = PARSERS[source_type]
    except KeyError:
        raise UnknownSourceTypeError(source_type) from None
    return factory()
