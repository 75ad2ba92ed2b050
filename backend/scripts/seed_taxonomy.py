from __future__ import annotations

from finstat.config import Settings
from finstat.persistence import SqlPersistence
from finstat.services.taxonomy import seed_taxonomy


def main() -> None:
    settings = Settings.from_env()
    persistence = SqlPersistence(settings.database_url)
    counts = seed_taxonomy(persistence, settings.seed_taxonomy)
    total_subcategories = sum(len(subs) for _, subs in settings.seed_taxonomy)
    print(f"Categories created: {counts['categories']} of {len(settings.seed_taxonomy)}")
    print(f"Subcategories created: {counts['subcategories']} of {total_subcategories}")
    print("Seed completed.")


if __name__ == "__main__":
    main()
