"""Serving layer: orchestration service and HTTP adapter"""
