"""
Background Jobs
Queue handlers, worker pool and the cron scheduler
"""
