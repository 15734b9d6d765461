from sbx.cli import main

raise SystemExit(main())
