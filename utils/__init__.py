# Utils package initialization file
