from appregkit.cli import main

raise SystemExit(main())
