from kern_profile.cli import main

raise SystemExit(main())
