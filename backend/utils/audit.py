"""
Structured audit logging module for the AuthHub backend.

This module provides an AuditLogger class that logs events to a dedicated 'audit' logger
in structured JSON format and stores the same event in the ``audit_logs`` table, where
admins can query and export it. It supports context-aware request_id propagation across
async calls using contextvars.ContextVar.

Key features:
- Async-safe request_id, actor and client tracking via ContextVar
- Structured JSON output with ISO8601 timestamps
- Convenience methods for identity events (logins, secret rotation, role grants, ...)
- Details never carry secrets, passwords or tokens; only IDs and previews
"""

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog


# Context variable for tracking request_id across async calls
_request_id_context: ContextVar[Optional[str]] = ContextVar(
    'request_id', default=None
)

# Context variable for tracking actor (authenticated user) across async calls
_actor_context: ContextVar[Optional[str]] = ContextVar(
    'actor', default=None
)

# Client address and user agent of the current request
_client_context: ContextVar[tuple] = ContextVar(
    'client', default=(None, None)
)

# Keys that must never reach the audit stream
_REDACTED_KEYS = frozenset({'secret', 'password', 'token', 'encrypted_secret', 'key'})


class AuditLogger:
    """
    Structured audit logger for identity and authorization events.

    All events are written to a dedicated 'audit' logger as one JSON object
    per line, and persisted through the request's database session when one
    is given.
    """

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def set_request_id(self, request_id: str) -> None:
        """Set the request_id for the current context."""
        _request_id_context.set(request_id)

    def get_request_id(self) -> Optional[str]:
        return _request_id_context.get()

    def set_actor(self, actor: Optional[str]) -> None:
        """Set the authenticated user for this request context."""
        _actor_context.set(actor)

    def get_actor(self) -> Optional[str]:
        """Get the current actor from context, or None."""
        return _actor_context.get()

    def set_client(self, ip_address: Optional[str], user_agent: Optional[str]) -> None:
        _client_context.set((ip_address, user_agent))

    async def log(
        self,
        db: Optional[AsyncSession],
        action: str,
        actor: str,
        resource: str,
        resource_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Core method to log a structured audit event.

        Args:
            db: Session to persist the event with; None logs only
            action: Type of action performed (e.g., 'LOGIN', 'ROTATE_SECRET')
            actor: User performing the action; 'user' means "take it from context"
            resource: Type of resource affected (e.g., 'Service', 'RbacModel')
            resource_id: Unique identifier of the affected resource
            status: Result status (e.g., 'success', 'failure')
            details: Optional dict of additional context

        A failed insert is logged and rolled back; the audited operation has
        already been committed and is not undone.
        """
        clean = {
            k: v for k, v in (details or {}).items() if k not in _REDACTED_KEYS
        }
        ip_address, user_agent = _client_context.get()
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'action': action,
            'actor': actor if actor != 'user' else (self.get_actor() or 'user'),
            'resource': resource,
            'resource_id': resource_id,
            'status': status,
            'request_id': self.get_request_id(),
            'details': clean,
        }
        self.logger.info(json.dumps(event, default=str))

        if db is None:
            return
        db.add(AuditLog(
            action=action,
            severity='warning' if status == 'failure' else 'info',
            status=status,
            actor=event['actor'],
            resource=resource,
            resource_id=resource_id,
            details=json.loads(json.dumps(clean, default=str)),
            request_id=event['request_id'],
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            self.logger.error(
                f"Failed to persist audit event {action}: {exc.__class__.__name__}"
            )

    async def log_login(
        self,
        db: Optional[AsyncSession],
        user_id: str,
        method: str,
        service_id: str,
        is_new_user: bool = False,
        redirected: bool = False,
    ) -> None:
        await self.log(
            db,
            action='REGISTER' if is_new_user and method == 'email' else 'LOGIN',
            actor=f'user:{user_id}',
            resource='User',
            resource_id=user_id,
            status='success',
            details={
                'method': method,
                'service_id': service_id,
                'new_user': is_new_user,
                'redirected': redirected,
            },
        )

    async def log_login_failed(
        self, db: Optional[AsyncSession], method: str, reason: str
    ) -> None:
        """Record a rejected login. Never include the submitted credentials."""
        await self.log(
            db,
            action='LOGIN_FAILED',
            actor='anonymous',
            resource='User',
            resource_id='-',
            status='failure',
            details={'method': method, 'reason': reason},
        )

    async def log_logout(self, db: Optional[AsyncSession], user_id: str) -> None:
        await self.log(
            db,
            action='LOGOUT',
            actor=f'user:{user_id}',
            resource='User',
            resource_id=user_id,
            status='success',
        )

    async def log_secret_rotation(
        self, db: Optional[AsyncSession], service_id: str, preview: str
    ) -> None:
        """
        Log a signing secret rotation.

        Args:
            service_id: Service whose secret changed
            preview: Display-safe preview of the new secret
        """
        await self.log(
            db,
            action='ROTATE_SECRET',
            actor='user',
            resource='Service',
            resource_id=service_id,
            status='success',
            details={'secret_preview': preview},
        )

    async def log_service_change(
        self,
        db: Optional[AsyncSession],
        operation: str,
        service_id: str,
        name: Optional[str] = None,
    ) -> None:
        details = {}
        if name:
            details['name'] = name
        await self.log(
            db,
            action=operation,
            actor='user',
            resource='Service',
            resource_id=service_id,
            status='success',
            details=details,
        )

    async def log_role_assignment(
        self,
        db: Optional[AsyncSession],
        operation: str,
        user_id: str,
        service_id: str,
        role_id: str,
    ) -> None:
        """
        Log a user → service → role grant or revocation.

        Args:
            operation: 'ASSIGN_ROLE' or 'UNASSIGN_ROLE'
        """
        await self.log(
            db,
            action=operation,
            actor='user',
            resource='UserServiceRole',
            resource_id=f'{user_id}:{service_id}:{role_id}',
            status='success',
            details={
                'user_id': user_id,
                'service_id': service_id,
                'role_id': role_id,
            },
        )

    async def log_model_binding(
        self,
        db: Optional[AsyncSession],
        operation: str,
        service_id: str,
        model_id: Optional[str] = None,
    ) -> None:
        """Log 'BIND_MODEL' / 'UNBIND_MODEL' on a service."""
        details = {}
        if model_id:
            details['rbac_model_id'] = model_id
        await self.log(
            db,
            action=operation,
            actor='user',
            resource='Service',
            resource_id=service_id,
            status='success',
            details=details,
        )

    async def log_model_change(
        self,
        db: Optional[AsyncSession],
        operation: str,
        model_id: str,
        name: Optional[str] = None,
    ) -> None:
        details = {}
        if name:
            details['name'] = name
        await self.log(
            db,
            action=operation,
            actor='user',
            resource='RbacModel',
            resource_id=model_id,
            status='success',
            details=details,
        )

    async def log_login_config_change(
        self,
        db: Optional[AsyncSession],
        service_id: str,
        fields: list,
    ) -> None:
        """
        Log a login page configuration change.

        Args:
            service_id: Service whose login page changed
            fields: Names of the changed fields (or 'methods')
        """
        await self.log(
            db,
            action='UPDATE_LOGIN_CONFIG',
            actor='user',
            resource='LoginPageConfig',
            resource_id=service_id,
            status='success',
            details={'fields': sorted(fields)},
        )

    async def log_hub_role_change(
        self, db: Optional[AsyncSession], user_id: str, old_role: str, new_role: str
    ) -> None:
        await self.log(
            db,
            action='UPDATE_ROLE',
            actor='user',
            resource='User',
            resource_id=user_id,
            status='success',
            details={'old_role': old_role, 'new_role': new_role},
        )

    async def log_api_key_created(
        self, db: Optional[AsyncSession], key_id: str, name: str, preview: str
    ) -> None:
        await self.log(
            db,
            action='CREATE_API_KEY',
            actor='user',
            resource='ApiKey',
            resource_id=key_id,
            status='success',
            details={'name': name, 'key_preview': preview},
        )

    async def log_service_auth_failed(
        self, db: Optional[AsyncSession], service_id: str, endpoint: str
    ) -> None:
        """A calling service presented a wrong or unusable secret."""
        await self.log(
            db,
            action='SERVICE_AUTH_FAILED',
            actor=f'service:{service_id}',
            resource='Service',
            resource_id=service_id,
            status='failure',
            details={'endpoint': endpoint},
        )


# Global audit logger instance for convenient import
audit = AuditLogger()
