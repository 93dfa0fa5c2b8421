"""
Assessment packages: the shared base model and the competency engine.
"""
