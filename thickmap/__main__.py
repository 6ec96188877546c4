from thickmap.thickness_map import main

main()
