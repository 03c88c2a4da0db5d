"""Rejection of scanner and probe traffic before it reaches the app.

Checks run in a fixed order and the first match wins: allow-list, path,
extension, user agent, volumetric limit, query parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

from household_edge.security import AdmissionDecision, AdmissionPolicy, mask_identifier

logger = logging.getLogger(__name__)

BLOCKED_PATHS = (
    # WordPress
    "/wp-admin",
    "/wp-login",
    "/wp-content",
    "/wp-includes",
    "/wp-config",
    "/wp-json",
    "/wordpress",
    "/old/wp-admin",
    "/blog/wp-admin",
    "/site/wp-admin",
    "/test/wp-admin",
    "/demo/wp-admin",
    # admin panels
    "/admin",
    "/administrator",
    "/phpmyadmin",
    "/pma",
    "/mysql",
    "/adminer",
    "/cpanel",
    "/panel",
    "/dashboard",
    "/manager",
    # other CMSes
    "/drupal",
    "/joomla",
    "/magento",
    "/prestashop",
    "/opencart",
    "/typo3",
    # server files
    "/.env",
    "/.git",
    "/config",
    "/backup",
    "/backups",
    "/db",
    "/database",
    "/sql",
    "/dump",
    "/data",
    "/logs",
    "/log",
    "/temp",
    "/tmp",
    "/cache",
    # shells and uploaders
    "/shell",
    "/cmd",
    "/eval",
    "/upload",
    "/uploads",
    "/files",
    "/filemanager",
    "/cgi-bin",
    "/scripts",
    "/api/v1/auth",
    "/xmlrpc",
)

BLOCKED_EXTENSIONS = (
    ".php",
    ".asp",
    ".aspx",
    ".jsp",
    ".cgi",
    ".pl",
    ".py",
    ".rb",
    ".sh",
    ".bat",
    ".cmd",
    ".exe",
    ".sql",
    ".bak",
    ".backup",
    ".log",
    ".ini",
    ".conf",
    ".config",
)

# Substring matches. Generic "bot", "curl" or "wget" are left out on purpose.
BLOCKED_USER_AGENTS = (
    "sqlmap",
    "nmap",
    "nikto",
    "whatweb",
    "dirb",
    "dirbuster",
    "gobuster",
    "wfuzz",
    "burp",
    "acunetix",
    "nessus",
    "openvas",
    "masscan",
    "zmap",
    "zgrab",
    "shodan",
    "censys",
    "scanner",
    "badbot",
    "malbot",
    "hackbot",
    "python-requests/2.6",
    "libwww-perl",
)

SUSPICIOUS_PARAMS = (
    "union",
    "select",
    "drop",
    "insert",
    "update",
    "delete",
    "script",
    "javascript",
    "vbscript",
    "onload",
    "onerror",
    "../",
    "..\\",
    "/etc/passwd",
    "/proc/",
    "cmd=",
    "exec=",
    "eval(",
    "system(",
    "shell_exec",
    "base64_decode",
)


class RejectionReason(str, Enum):
    PATH = "path"
    EXTENSION = "extension"
    USER_AGENT = "user_agent"
    RATE_LIMIT = "rate_limit"
    PARAMS = "params"


@dataclass(frozen=True, slots=True)
class Rejection:
    reason: RejectionReason
    message: str
    status: int = 403
    decision: AdmissionDecision | None = None

    def body(self) -> dict:
        return {
            "error": "Too Many Requests" if self.status == 429 else "Forbidden",
            "message": self.message,
            "status": self.status,
        }


@dataclass(frozen=True, slots=True)
class ProbeRules:
    blocked_paths: tuple[str, ...] = BLOCKED_PATHS
    blocked_extensions: frozenset[str] = frozenset(BLOCKED_EXTENSIONS)
    blocked_user_agents: tuple[str, ...] = BLOCKED_USER_AGENTS
    suspicious_params: tuple[str, ...] = SUSPICIOUS_PARAMS
    allow_list: tuple[str, ...] = ()

    @classmethod
    def with_overrides(
        cls,
        extra_paths: Iterable[str] = (),
        extra_user_agents: Iterable[str] = (),
        allow_list: Iterable[str] = (),
    ) -> "ProbeRules":
        return cls(
            blocked_paths=tuple(p.lower() for p in (*BLOCKED_PATHS, *extra_paths) if p),
            blocked_user_agents=tuple(u.lower() for u in (*BLOCKED_USER_AGENTS, *extra_user_agents) if u),
            allow_list=tuple(a for a in allow_list if a),
        )


def is_blocked_path(path: str, blocked_paths: Iterable[str]) -> bool:
    """True when `path` is a blocked path or lies beneath it.

    "/admin" blocks "/admin", "/admin/x" and "/admin.bak" but not "/administration".
    """
    path = (path or "").lower()
    for blocked in blocked_paths:
        blocked = blocked.lower()
        if path == blocked or path.startswith(blocked + "/") or path.startswith(blocked + "."):
            return True
    return False


def path_extension(path: str) -> str:
    last = (path or "").rsplit("/", 1)[-1].lower()
    if "." not in last:
        return ""
    return "." + last.rsplit(".", 1)[-1]


def has_blocked_extension(path: str, blocked_extensions: frozenset[str]) -> bool:
    ext = path_extension(path)
    return bool(ext) and ext in blocked_extensions


def is_blocked_user_agent(user_agent: str, blocked_user_agents: Iterable[str]) -> bool:
    ua = (user_agent or "").lower()
    return any(b.lower() in ua for b in blocked_user_agents)


def has_suspicious_params(
    query_params: Mapping[str, str] | Iterable[tuple[str, str]],
    suspicious: Iterable[str],
) -> bool:
    items = query_params.items() if isinstance(query_params, Mapping) else query_params
    suspicious = tuple(suspicious)
    for key, value in items:
        combined = f"{key}={value}".lower()
        if any(s in combined for s in suspicious):
            return True
    return False


def is_allow_listed(client_id: str, allow_list: Iterable[str]) -> bool:
    # Entries may name the bare address ("10.0.") or the full key ("ip:10.0.").
    bare = client_id.split(":", 1)[1] if client_id.startswith(("ip:", "user:")) else client_id
    return any(
        candidate == entry or candidate.startswith(entry)
        for entry in allow_list
        for candidate in (client_id, bare)
    )


@dataclass(slots=True)
class ProbeFilter:
    rules: ProbeRules = field(default_factory=ProbeRules)
    policy: AdmissionPolicy | None = None
    limit_name: str = "probe"
    log_blocked: bool = True

    def evaluate(
        self,
        path: str,
        user_agent: str,
        query_params: Mapping[str, str] | Iterable[tuple[str, str]],
        client_id: str,
        now: float | None = None,
    ) -> Rejection | None:
        if is_allow_listed(client_id, self.rules.allow_list):
            return None

        rejection = None
        if is_blocked_path(path, self.rules.blocked_paths):
            rejection = Rejection(RejectionReason.PATH, "Path not allowed")
        elif has_blocked_extension(path, self.rules.blocked_extensions):
            rejection = Rejection(RejectionReason.EXTENSION, "File type not allowed")
        elif is_blocked_user_agent(user_agent, self.rules.blocked_user_agents):
            rejection = Rejection(RejectionReason.USER_AGENT, "User agent not allowed")
        else:
            if self.policy is not None:
                decision = self.policy.check(self.limit_name, client_id, now=now)
                if not decision.allowed:
                    rejection = Rejection(RejectionReason.RATE_LIMIT, "Rate limit exceeded", 429, decision)
            if rejection is None and has_suspicious_params(query_params, self.rules.suspicious_params):
                rejection = Rejection(RejectionReason.PARAMS, "Suspicious request")

        if rejection is not None and self.log_blocked:
            logger.info(
                "request blocked: reason=%s path=%s client=%s",
                rejection.reason.value,
                path,
                mask_identifier(client_id),
                extra={
                    "event": "probe.blocked",
                    "reason": rejection.reason.value,
                    "path": path,
                    "client": mask_identifier(client_id),
                },
            )
        return rejection
