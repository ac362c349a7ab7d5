"""SSO Hub Notifier - Infrastructure Layer (store, queues, audit shipping)."""
