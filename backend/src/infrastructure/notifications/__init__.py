"""Notification adapters."""

from .smtp_notifier import SmtpNotifier, build_export_email

__all__ = ["SmtpNotifier", "build_export_email"]
