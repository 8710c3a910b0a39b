"""Conversation turn orchestration: tools, prompts, models, image synthesis."""
