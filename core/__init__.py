"""Shared configuration, models and Supabase-backed collaborators."""
