"""
Teacher Competency Assessment Engine

This package implements the backend of the one-shot teacher competency
assessment:
1. Stratified, randomized question selection per attempt
2. Attempt lifecycle with a single attempt per teacher and assessment
3. AI-based evaluation of short answers and transcribed audio/video answers,
   with bounded retries and fallback scores
4. Domain scoring, proficiency bands, strength/gap domains and micro-PD
   recommendations
5. Idempotent result storage with a periodic evaluation sweep
"""

__version__ = "1.0.0"
