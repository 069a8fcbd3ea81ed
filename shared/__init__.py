"""Configuration, logging and database setup shared by the engine and the API."""
