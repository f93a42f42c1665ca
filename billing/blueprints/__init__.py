"""JSON blueprints. Routes parse input and call the engine services; no business rules here."""
