"""Run the Heartwatch service: python -m heartwatch [config.json]"""

from heartwatch.service import main

if __name__ == "__main__":
    main()
