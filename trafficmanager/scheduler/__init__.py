"""Cron scheduling and the services that synchronise insights and the store ranking."""