from datetime import datetime, timezone
from typing import Optional, Any, Dict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from . import models
from .config import get_settings


class ComplianceLogger:
	"""Stores scheduling events in the AuditLog table."""

	STANDARD_ACTIONS = {action.value for action in models.AuditAction}

	def __init__(self, institution_id: Optional[str] = None):
		self.institution_id = institution_id
		self.logger = structlog.get_logger('compliance')

	def _normalize_action(self, action: str) -> models.AuditAction:
		action_upper = (action or '').upper()
		if action_upper in self.STANDARD_ACTIONS:
			return models.AuditAction(action_upper)
		if action_upper.endswith('_CREATE') or action_upper.startswith('CREATE_'):
			return models.AuditAction.CREATE
		if action_upper.endswith('_DELETE') or action_upper.startswith('DELETE_') or 'CANCEL' in action_upper:
			return models.AuditAction.DELETE
		if 'BULK' in action_upper or 'RECURRING' in action_upper:
			return models.AuditAction.BULK_ACTION
		# Reschedules, transfers, completions and availability edits are updates
		return models.AuditAction.UPDATE

	def log_event(
		self,
		db: Session,
		action: str,
		category: str,
		actor: Optional[str] = None,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[str] = None,
		new_values: Optional[Dict[str, Any]] = None,
		**_: Any
	) -> None:
		"""Write one audit row and commit it. Failures are logged, never raised."""
		db_log = models.AuditLog(
			actor=actor or 'System',
			action=self._normalize_action(action),
			category=category or 'GENERAL',
			severity=severity or 'INFO',
			institution_id=self.institution_id or get_settings().audit_institution_id,
			resource_type=resource_type,
			resource_id=resource_id,
			details=details,
			new_values=new_values,
			timestamp=datetime.now(timezone.utc),
		)
		try:
			db.add(db_log)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error("audit_log_write_failed", action=action, resource_id=resource_id, error=str(e))


# Singleton instance for global import
compliance_logger = ComplianceLogger()
