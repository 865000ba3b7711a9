from docs_translate.cli import main

main()
