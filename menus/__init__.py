"""Interactive questionary menus."""
