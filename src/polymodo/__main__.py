from polymodo.cli import main

main()
