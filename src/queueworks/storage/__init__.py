"""SQLite storage primitives shared by the job queue."""
