import logging

from deobf_service.config import settings
from deobf_service.workspace import sweep_stale


def main() -> None:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    removed = sweep_stale(settings.work_dir, max_age_sec=settings.work_retention_hours * 3600)
    print(f"Stale work dirs cleaned: {removed}")


if __name__ == "__main__":
    main()
