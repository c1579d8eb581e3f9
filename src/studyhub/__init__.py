"""StudyHub realtime service: live updates, notifications and study-time tracking."""
