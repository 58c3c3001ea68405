from .analytics_tools import AnalyticsTools
from .booking_tools import BookingTools
from .notification_tools import NotificationTools
from .search_tools import SearchTools
from .sheet_tools import GoogleSheetsClient, InMemorySheetsClient

__all__ = [
    "AnalyticsTools",
    "BookingTools",
    "NotificationTools",
    "SearchTools",
    "GoogleSheetsClient",
    "InMemorySheetsClient",
]
