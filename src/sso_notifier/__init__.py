"""
SSO Hub Notifier.

Centralized notification and alerting dispatcher: queues notifications,
renders them through templates and delivers them over email, Slack,
generic webhooks, SMS and Teams with retry and escalation guarantees.
"""
__version__ = "1.0.0"
