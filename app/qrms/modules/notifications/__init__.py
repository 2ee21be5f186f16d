"""
Notification Dispatcher.

One durable row per transition event, inserted in the transition's own session.
Delivery and read UI are outside the engine; the read API here only lists and
marks rows.
"""
