"""
Calendar Domain

ERP calendar events: CRUD for the agency's own events. Google Calendar
linkage columns are maintained by services/calendar_sync.py only.
"""
