from attoplan.cli import main

main()
