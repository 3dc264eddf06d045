# Skill inference: catalog, scoring and the engine that writes skill records
