"""
Childcare Billing Audit Service
Security- and money-relevant event trail for compliance and operations.

Every event is printed as one structured line (secrets masked) and then
written to the audit_logs table on a background thread. The durable write
is best-effort: a failure is printed and never reaches the caller.
"""

import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable

import psycopg2
import psycopg2.extras

AUDIT_ENABLED = os.environ.get('AUDIT_ENABLED', 'true').lower() == 'true'
DATABASE_URL = os.environ.get('DATABASE_URL')

REDACTED = '[REDACTED]'

# Matched as substrings after lowercasing and dropping '_', '-' and spaces
SENSITIVE_KEYS = ('password', 'token', 'secret', 'apikey', 'authorization', 'creditcard', 'ssn')


# Action type constants
class AuditAction:
    # Billing
    PAYMENT_INITIATED = 'PAYMENT_INITIATED'
    PLAN_CHANGED = 'PLAN_CHANGED'
    RECONCILIATION_GAP = 'RECONCILIATION_GAP'

    # Security
    SECURITY_ALERT = 'SECURITY_ALERT'
    RATE_LIMIT_EXCEEDED = 'RATE_LIMIT_EXCEEDED'
    ADMIN_ACCESS = 'ADMIN_ACCESS'
    ADMIN_DENIED = 'ADMIN_DENIED'


class AuditSeverity:
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'
    CRITICAL = 'critical'


def _normalize_key(key) -> str:
    return str(key).lower().replace('_', '').replace('-', '').replace(' ', '')


def mask_sensitive_data(data):
    """
    Replace values under sensitive keys with a redaction marker.

    Walks nested dicts and lists. Returns a new structure; the input is
    left untouched so the durable write can keep the full detail.
    """
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            normalized = _normalize_key(key)
            if any(sensitive in normalized for sensitive in SENSITIVE_KEYS):
                masked[key] = REDACTED
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(data, (list, tuple)):
        return [mask_sensitive_data(item) for item in data]
    return data


def get_client_info(headers, remote_addr: Optional[str] = None) -> Dict[str, str]:
    """Extract client IP and user agent from request headers."""
    forwarded_for = headers.get('X-Forwarded-For', '') if headers else ''
    real_ip = headers.get('X-Real-IP', '') if headers else ''

    ip_address = 'unknown'
    if forwarded_for:
        ip_address = forwarded_for.split(',')[0].strip() or 'unknown'
    elif real_ip:
        ip_address = real_ip.strip()
    elif remote_addr:
        ip_address = remote_addr

    user_agent = (headers.get('User-Agent', '') if headers else '') or 'unknown'
    return {'ip_address': ip_address, 'user_agent': user_agent[:500]}


class PostgresAuditSink:
    """Durable append-only store. Uses its own connection so a rolled-back
    request transaction cannot take the audit row with it."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or DATABASE_URL

    def __call__(self, entry: Dict[str, Any]) -> None:
        if not self.database_url:
            return
        conn = psycopg2.connect(self.database_url, connect_timeout=5)
        try:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO audit_logs
                (action, severity, user_id, user_email, organization_id,
                 resource_type, resource_id, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                entry['action'],
                entry['severity'],
                entry.get('user_id'),
                entry.get('user_email'),
                entry.get('organization_id'),
                entry.get('resource_type'),
                entry.get('resource_id'),
                entry.get('ip_address'),
                entry.get('user_agent'),
                psycopg2.extras.Json(entry.get('details') or {}),
                entry['timestamp'],
            ))
            conn.commit()
            cur.close()
        finally:
            conn.close()


class AuditLogger:
    """
    Audit trail writer.

    Args:
        sink: Callable receiving the unmasked entry dict; None disables
              durable writes (log line only)
        background: Persist on a worker thread (True) or inline (False)
        clock: Returns the current aware datetime
    """

    def __init__(self, sink: Optional[Callable[[Dict[str, Any]], None]] = None,
                 background: bool = True, clock: Optional[Callable[[], datetime]] = None):
        self.sink = sink
        self.background = background
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='audit') if background else None

    def record(
        self,
        action: str,
        severity: str = AuditSeverity.INFO,
        actor: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        client: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Record an audit event. Never raises.

        Args:
            action: AuditAction constant
            severity: AuditSeverity constant
            actor: Authenticated user ({'sub', 'email'}); None for system actions
            organization_id: Tenant the event concerns
            resource_type: Kind of resource touched
            resource_id: Identifier of the resource
            details: Free-form detail, masked in the log line only
            client: {'ip_address', 'user_agent'} from get_client_info()

        Returns:
            The unmasked entry that was submitted for persistence
        """
        actor = actor or {}
        client = client or {}
        entry = {
            'timestamp': self.clock().isoformat(),
            'action': action,
            'severity': severity,
            'user_id': actor.get('sub') or actor.get('user_id'),
            'user_email': actor.get('email'),
            'organization_id': organization_id,
            'resource_type': resource_type,
            'resource_id': resource_id,
            'ip_address': client.get('ip_address'),
            'user_agent': client.get('user_agent'),
            'details': details or {},
        }

        self._emit(entry)

        if AUDIT_ENABLED and self.sink is not None:
            if self._executor is not None:
                try:
                    self._executor.submit(self._persist, entry)
                except RuntimeError as e:
                    # Executor already shut down (interpreter exit)
                    print(f"[AUDIT] Warning: Failed to queue audit event: {e}", file=sys.stderr)
            else:
                self._persist(entry)

        return entry

    def _emit(self, entry: Dict[str, Any]) -> None:
        line = dict(entry)
        line['details'] = mask_sensitive_data(entry['details'])
        prefix = f"[AUDIT:{entry['severity'].upper()}]"
        stream = sys.stderr if entry['severity'] in (AuditSeverity.ERROR, AuditSeverity.CRITICAL) else sys.stdout
        print(f"{prefix} {json.dumps(line, default=str, sort_keys=True)}", file=stream, flush=True)

    def _persist(self, entry: Dict[str, Any]) -> None:
        try:
            self.sink(entry)
        except Exception as e:
            # Don't let audit logging failures break the API
            print(f"[AUDIT] Warning: Failed to persist audit event {entry['action']}: {e}", file=sys.stderr)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Pre-built events
    # ------------------------------------------------------------------

    def checkout_initiated(self, actor, organization_id: str, plan: str, billing_cycle: str,
                           amount, unit_count: int, client=None):
        return self.record(
            AuditAction.PAYMENT_INITIATED,
            AuditSeverity.INFO,
            actor=actor,
            organization_id=organization_id,
            resource_type='subscription',
            resource_id='checkout',
            details={
                'plan': plan,
                'billing_cycle': billing_cycle,
                'amount': str(amount),
                'unit_count': unit_count,
            },
            client=client,
        )

    def plan_changed(self, actor, organization_id: str, subscription_id: str,
                     previous_plan: str, new_plan: str, billing_cycle: str,
                     amount, is_upgrade: bool, client=None):
        return self.record(
            AuditAction.PLAN_CHANGED,
            AuditSeverity.INFO,
            actor=actor,
            organization_id=organization_id,
            resource_type='subscription',
            resource_id=subscription_id,
            details={
                'change': f'plan-change-{previous_plan}-to-{new_plan}',
                'previous_plan': previous_plan,
                'new_plan': new_plan,
                'billing_cycle': billing_cycle,
                'amount': str(amount),
                'is_upgrade': is_upgrade,
            },
            client=client,
        )

    def security_alert(self, message: str, details: Optional[Dict[str, Any]] = None,
                       actor=None, organization_id: Optional[str] = None, client=None):
        merged = {'message': message}
        merged.update(details or {})
        return self.record(
            AuditAction.SECURITY_ALERT,
            AuditSeverity.CRITICAL,
            actor=actor,
            organization_id=organization_id,
            details=merged,
            client=client,
        )

    def admin_access(self, actor, resource: str, organization_id: Optional[str] = None, client=None):
        return self.record(
            AuditAction.ADMIN_ACCESS,
            AuditSeverity.INFO,
            actor=actor,
            organization_id=organization_id,
            resource_type='admin_panel',
            resource_id=resource,
            client=client,
        )

    def admin_denied(self, actor, reason: str, organization_id: Optional[str] = None, client=None):
        return self.record(
            AuditAction.ADMIN_DENIED,
            AuditSeverity.WARNING,
            actor=actor,
            organization_id=organization_id,
            details={'reason': reason},
            client=client,
        )

    def rate_limit_exceeded(self, route_class: str, identity: str, actor=None, client=None):
        return self.record(
            AuditAction.RATE_LIMIT_EXCEEDED,
            AuditSeverity.WARNING,
            actor=actor,
            resource_type='route',
            resource_id=route_class,
            details={'identity': identity},
            client=client,
        )

    def reconciliation_gap(self, gap, actor=None, client=None):
        """Escalate a local write failure after a successful processor call."""
        return self.record(
            AuditAction.RECONCILIATION_GAP,
            AuditSeverity.CRITICAL,
            actor=actor,
            organization_id=gap.organization_id,
            resource_type='organization',
            resource_id=gap.organization_id,
            details={
                'message': gap.message,
                'external_id': gap.external_id,
                'intended': gap.intended,
                'cause': repr(gap.cause) if gap.cause else None,
            },
            client=client,
        )


audit_logger = AuditLogger(sink=PostgresAuditSink())
