"""Allow running as: python -m peerguard"""
import sys
import traceback

from peerguard.main import main, _crash_report

if __name__ == "__main__":
    try:
        main()
    except SystemExit:
        raise
    except Exception:
        tb = traceback.format_exc()
        _crash_report("PeerGuard - Fatal Error", tb)
        sys.exit(1)
