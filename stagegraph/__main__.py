from stagegraph.cli import main

main()
