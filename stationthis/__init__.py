"""StationThis spell/cook execution coordinator."""
