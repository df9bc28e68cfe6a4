# kleanly/monitoring/__init__.py
"""
Error tracking integration.

Provides:
- Sentry error tracking (Flask, SQLAlchemy and logging integrations)
- Release and environment tagging
- Helpers for manual reporting from the billing services
"""

import os
from typing import Optional

import sentry_sdk
from flask import Flask, request
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


def init_sentry(app: Flask):
    """
    Initialize Sentry error tracking and performance monitoring.

    Args:
        app: Flask application instance
    """
    sentry_dsn = app.config.get('SENTRY_DSN') or os.getenv('SENTRY_DSN')

    if not sentry_dsn or app.config.get('TESTING'):
        app.logger.info("Sentry DSN not configured - error tracking disabled")
        return

    try:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[
                FlaskIntegration(transaction_style="url"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=app.config.get('SENTRY_LOG_LEVEL', None),
                    event_level=app.config.get('SENTRY_EVENT_LEVEL', None),
                ),
            ],
            traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
            environment=app.config.get('SENTRY_ENVIRONMENT', 'production'),
            release=app.config.get('SENTRY_RELEASE', 'unknown'),
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
            ignore_errors=[KeyboardInterrupt, SystemExit],
            sample_rate=app.config.get('SENTRY_SAMPLE_RATE', 1.0),
            before_send=before_send_event,
        )

        app.logger.info(
            f"Sentry initialized (environment={app.config.get('SENTRY_ENVIRONMENT', 'production')}, "
            f"traces_sample_rate={app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1)})"
        )
        register_context_processors(app)

    except Exception as e:
        app.logger.error(f"Failed to initialize Sentry: {e}", exc_info=True)


def before_send_event(event, hint):
    """
    Filter or modify events before sending to Sentry.

    Returns:
        Modified event dict or None to drop the event
    """
    # Drop events from health check endpoints
    if event.get('request', {}).get('url', '').endswith('/__health__'):
        return None

    values = event.get('exception', {}).get('values') or [{}]
    exc_type = values[0].get('type', 'Unknown')

    # Handled business outcomes are not errors
    if exc_type in ('NotFound', 'ValidationFailed', 'AvailabilityConflict'):
        return None

    if 'exception' in event:
        exc_value = (values[0].get('value') or '')[:100]
        event['fingerprint'] = [exc_type, exc_value]

    return event


def register_context_processors(app: Flask):
    """Register before_request hooks to add context to Sentry events."""

    @app.before_request
    def add_sentry_context():
        sentry_sdk.set_context("request_info", {
            "method": request.method,
            "endpoint": request.endpoint,
        })
        sentry_sdk.set_tag("endpoint", request.endpoint or "unknown")


# Helper functions for manual error reporting

def capture_exception(error: Exception, **tags):
    """
    Manually capture an exception to Sentry.

    Args:
        error: Exception to capture
        **tags: Scalar tags (subscription_id, reason, ...) for filtering
    """
    if tags:
        with sentry_sdk.new_scope() as scope:
            for key, value in tags.items():
                if value is not None:
                    scope.set_tag(key, str(value))
            sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_exception(error)


def add_breadcrumb(message: str, category: str = "custom", level: str = "info", data: Optional[dict] = None):
    """
    Add a breadcrumb to Sentry (for tracing the events leading to an error).

    Args:
        message: Breadcrumb message
        category: Category (stripe.webhook, sponsorship, ...)
        level: Severity level
        data: Additional data dict
    """
    sentry_sdk.add_breadcrumb(
        message=message,
        category=category,
        level=level,
        data=data or {},
    )
