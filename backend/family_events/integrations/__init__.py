"""External collaborator capabilities (Protocols) with real adapters and fakes."""

from family_events.integrations.browser import BrowserEngine, BrowserPage, FormField, PlaywrightBrowserEngine
from family_events.integrations.calendars import BusyBlock, CalendarProvider, GoogleCalendarProvider
from family_events.integrations.mail import GmailReportSink, ReportSink
from family_events.integrations.resolver import DnsResolver, HostResolver
from family_events.integrations.sms import SmsGateway, TwilioSmsGateway

__all__ = [
    "BrowserEngine",
    "BrowserPage",
    "BusyBlock",
    "CalendarProvider",
    "DnsResolver",
    "FormField",
    "GmailReportSink",
    "GoogleCalendarProvider",
    "HostResolver",
    "PlaywrightBrowserEngine",
    "ReportSink",
    "SmsGateway",
    "TwilioSmsGateway",
]
