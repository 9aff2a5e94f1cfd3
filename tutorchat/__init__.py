"""
tutorchat - AI tutoring conversation sessions for the exam-preparation platform.
"""

__version__ = "1.0.0"
