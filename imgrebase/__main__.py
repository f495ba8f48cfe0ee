from imgrebase.main import main

main()
