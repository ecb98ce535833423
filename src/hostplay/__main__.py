from hostplay.cli import main

main()
