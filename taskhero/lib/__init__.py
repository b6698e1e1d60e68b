"""Supporting services for TaskHero: database backups."""
