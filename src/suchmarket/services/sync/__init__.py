"""Collection synchronization and discovery engine."""
