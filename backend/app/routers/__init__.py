# API Routers
from app.routers import allotments, bookings, channel_manager

__all__ = ['allotments', 'bookings', 'channel_manager']
