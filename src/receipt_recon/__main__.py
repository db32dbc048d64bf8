import sys

from receipt_recon.main import main

sys.exit(main())
