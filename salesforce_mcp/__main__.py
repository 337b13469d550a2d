import sys

from salesforce_mcp.main import main

sys.exit(main())
