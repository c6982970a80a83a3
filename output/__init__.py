"""
Output module - report formatting and sinks

Contains:
- report sinks (logger, text stream)
- formatters for agent status, endpoint diagnostics and consistency issues
"""

from .formatters import (
    LoggingReportSink,
    StreamReportSink,
    format_agent_report,
    format_endpoint_diagnostic,
    format_issues,
)

__all__ = [
    'LoggingReportSink',
    'StreamReportSink',
    'format_agent_report',
    'format_endpoint_diagnostic',
    'format_issues',
]
