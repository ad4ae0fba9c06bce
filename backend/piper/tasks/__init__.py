"""Celery 任务"""
