"""Allow ``python -m crm_ad_sync``."""

from crm_ad_sync.main import main


if __name__ == "__main__":
    main()
