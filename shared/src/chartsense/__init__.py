"""ChartSense shared package: configuration, database access, ORM models."""
