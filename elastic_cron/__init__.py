"""
elastic-cron

A cron daemon for containers: runs commands on cron-style schedules, pings
watchdog URLs on success or failure and ships job output to Elasticsearch.
"""

__version__ = "0.1.0"
