from prometheus_client import Counter


MESSAGES = Counter("hyvewyre_messages_total", "SMS messages processed", ["direction", "status"])
AI_CALLS = Counter("hyvewyre_ai_calls_total", "LLM completions requested", ["purpose", "status"])
BOOKINGS = Counter("hyvewyre_bookings_total", "Calendar bookings attempted", ["status"])
WEBHOOK_EVENTS = Counter("hyvewyre_webhook_events_total", "Webhook events processed", ["provider", "status"])
SCHED_TICKS = Counter("hyvewyre_scheduler_ticks_total", "Scheduler ticks processed", ["scope"])
POINTS_SPENT = Counter("hyvewyre_points_spent_total", "Points debited", ["reason"])
