from bobcat_exporter.exporter import main

main()
