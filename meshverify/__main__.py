from meshverify.cli import main

main()
