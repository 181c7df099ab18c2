"""Background workers for DropDeck.

workers.celery_app holds the Celery application and the beat schedule
that drives the expiry sweep (tasks live in lifecycle.tasks).
"""
