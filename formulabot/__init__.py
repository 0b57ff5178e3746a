"""Guided supplement-formula chatbot."""
