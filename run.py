"""Entry point for rootfs-quota when run from a checkout.

python run.py --config /etc/containerd-quota/config.json
"""

import sys

from rootfs_quota.cli import main

if __name__ == "__main__":
    sys.exit(main())
