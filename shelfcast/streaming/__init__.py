"""Behavior ingestion and signal delivery"""
