"""Uroflowmetry report workspace: analysis binding, clinical form, composition, persistence."""
