"""
Exam session services.

- exam_status: pure status resolution and time formatting
- session_lifecycle: session state machine over a SessionStore
- sweeper: batch completion of timed-out sessions
- grading: score aggregation and manual grading
"""
