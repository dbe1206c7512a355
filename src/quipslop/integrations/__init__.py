"""Outside channels mirrored into the show.

Integrations run in-process with FastAPI, sharing the event loop. They
subscribe to the EventBus for round milestones and feed viewer votes back
through the tally store. Each one is optional: with its settings unset the
app runs without it, and a misconfiguration is recorded on its status row
instead of touching the round loop.
"""
